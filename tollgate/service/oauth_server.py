from __future__ import annotations

import hmac
import secrets
import string
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from tollgate.clock import Clock, SystemClock
from tollgate.logging import get_logger
from tollgate.service.errors import (
    ClientMismatchError,
    InvalidClientError,
    InvalidOrExpiredCodeError,
    InvalidOrExpiredTokenError,
    InvalidRedirectUriError,
    MissingCodeError,
    MissingTokenError,
    NoUserContextError,
    RedirectUriMismatchError,
    UnsupportedGrantTypeError,
    ValidationError,
)
from tollgate.storage.common import UserStore, generate_uuid
from tollgate.storage.expiring import ExpiringStore
from tollgate.storage.models import AuthorizationCode, OAuthAccessToken, OAuthClient

CLIENT_PREFIX = "oauth:client:"
CODE_PREFIX = "oauth:code:"
TOKEN_PREFIX = "oauth:token:"
DEFAULT_CLIENT_SCOPES = ["openid", "profile", "email"]

_ALPHABET = string.ascii_letters + string.digits


class GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }


def random_string(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def parse_scope(scope: Optional[str]) -> List[str]:
    """Split a space-delimited scope string, dropping blanks and repeats."""
    seen: List[str] = []
    for item in (scope or "").split():
        if item not in seen:
            seen.append(item)
    return seen


def narrow_scopes(requested: Sequence[str], allowed: Sequence[str]) -> List[str]:
    return [s for s in requested if s in allowed]


def append_query(url: str, params: Dict[str, str]) -> str:
    """Set query parameters on ``url``, replacing same-named ones and keeping the rest."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class OAuthAuthorizationServer:
    """Minimal embedded OAuth2 provider.

    Supports client registration, the authorization-code and
    client-credentials grants with opaque bearer tokens, and a scope-gated
    userinfo endpoint. Clients, codes and tokens all live in the expiring
    store.
    """

    def __init__(
        self,
        users: UserStore,
        store: ExpiringStore,
        *,
        code_ttl_seconds: int = 600,
        access_token_ttl_seconds: int = 3600,
        client_ttl_seconds: int = 365 * 24 * 60 * 60,
        clock: Optional[Clock] = None,
    ) -> None:
        self.users = users
        self.store = store
        self.code_ttl_seconds = code_ttl_seconds
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.client_ttl_seconds = client_ttl_seconds
        self.clock: Clock = clock or SystemClock()
        self.logger = get_logger(__name__)
        self._grant_handlers: Dict[
            GrantType,
            Callable[[OAuthClient, Optional[str], Optional[str], Optional[str]], Awaitable[TokenResponse]],
        ] = {
            GrantType.AUTHORIZATION_CODE: self._authorization_code_grant,
            GrantType.CLIENT_CREDENTIALS: self._client_credentials_grant,
        }

    # -- clients -----------------------------------------------------------

    async def register_client(
        self,
        owner_user_id: str,
        name: str,
        redirect_uris: List[str],
        scopes: Optional[List[str]] = None,
    ) -> OAuthClient:
        if not name or not name.strip():
            raise ValidationError("client name is required")
        if not redirect_uris:
            raise ValidationError("at least one redirect_uri is required")
        for uri in redirect_uris:
            parts = urlsplit(uri)
            if parts.scheme not in {"http", "https"} or not parts.netloc:
                raise InvalidRedirectUriError(detail={"redirect_uri": uri})
        now = self.clock.now()
        client = OAuthClient(
            id=generate_uuid(),
            client_id=f"client_{random_string(16)}",
            client_secret=random_string(32),
            name=name.strip(),
            redirect_uris=list(redirect_uris),
            scopes=list(scopes) if scopes else list(DEFAULT_CLIENT_SCOPES),
            owner_user_id=owner_user_id,
            created_at=now,
            updated_at=now,
        )
        await self.store.set(
            CLIENT_PREFIX + client.client_id,
            client.to_payload(),
            self.client_ttl_seconds * 1000,
        )
        self.logger.info(
            "oauth_client_registered", client_id=client.client_id, owner_user_id=owner_user_id
        )
        return client

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        if not client_id:
            return None
        data = await self.store.get(CLIENT_PREFIX + client_id)
        if not isinstance(data, dict):
            return None
        return OAuthClient.from_payload(data)

    # -- authorization endpoint --------------------------------------------

    async def authorize(
        self,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        scope: Optional[str] = None,
        state: Optional[str] = None,
    ) -> str:
        client = await self.get_client(client_id)
        if not client:
            raise InvalidClientError()
        if redirect_uri not in client.redirect_uris:
            raise InvalidRedirectUriError()
        requested = parse_scope(scope) if scope else list(client.scopes)
        # Unknown or unregistered scopes are dropped rather than rejected
        scopes = narrow_scopes(requested, client.scopes)

        code = random_string(32)
        grant = AuthorizationCode(
            code=code,
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            user_id=user_id,
            scopes=scopes,
            expires_at=self.clock.now() + timedelta(seconds=self.code_ttl_seconds),
        )
        await self.store.set(CODE_PREFIX + code, grant.to_payload(), self.code_ttl_seconds * 1000)
        self.logger.info("oauth_code_issued", user_id=user_id, client_id=client.client_id)

        params = {"code": code}
        if state:
            params["state"] = state
        return append_query(redirect_uri, params)

    # -- token endpoint ----------------------------------------------------

    async def token(
        self,
        grant_type: str,
        client_id: str,
        client_secret: str,
        code: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> TokenResponse:
        client = await self._authenticate_client(client_id, client_secret)
        try:
            grant = GrantType(grant_type)
        except ValueError:
            raise UnsupportedGrantTypeError(detail={"grant_type": grant_type})
        handler = self._grant_handlers[grant]
        return await handler(client, code, redirect_uri, scope)

    async def _authenticate_client(self, client_id: str, client_secret: str) -> OAuthClient:
        client = await self.get_client(client_id)
        if not client or not client_secret:
            raise InvalidClientError()
        if not hmac.compare_digest(
            client.client_secret.encode("utf-8"), client_secret.encode("utf-8")
        ):
            self.logger.warning("oauth_client_secret_mismatch", client_id=client_id)
            raise InvalidClientError()
        return client

    async def _authorization_code_grant(
        self,
        client: OAuthClient,
        code: Optional[str],
        redirect_uri: Optional[str],
        scope: Optional[str],
    ) -> TokenResponse:
        if not code:
            raise MissingCodeError()
        grant = self._live_code(await self.store.get(CODE_PREFIX + code))
        if grant is None:
            raise InvalidOrExpiredCodeError()
        if grant.client_id != client.client_id:
            raise ClientMismatchError()
        if redirect_uri and grant.redirect_uri != redirect_uri:
            raise RedirectUriMismatchError()
        # Single use: only the caller whose pop returns the code may mint a token
        if self._live_code(await self.store.pop(CODE_PREFIX + code)) is None:
            raise InvalidOrExpiredCodeError()
        response = await self._mint_token(client, grant.scopes, grant.user_id)
        self.logger.info(
            "oauth_token_issued",
            grant_type=GrantType.AUTHORIZATION_CODE.value,
            user_id=grant.user_id,
            client_id=client.client_id,
        )
        return response

    async def _client_credentials_grant(
        self,
        client: OAuthClient,
        code: Optional[str],
        redirect_uri: Optional[str],
        scope: Optional[str],
    ) -> TokenResponse:
        requested = parse_scope(scope) if scope else list(client.scopes)
        response = await self._mint_token(client, narrow_scopes(requested, client.scopes), None)
        self.logger.info(
            "oauth_token_issued",
            grant_type=GrantType.CLIENT_CREDENTIALS.value,
            client_id=client.client_id,
        )
        return response

    async def _mint_token(
        self, client: OAuthClient, scopes: List[str], user_id: Optional[str]
    ) -> TokenResponse:
        access_token = random_string(64)
        record = OAuthAccessToken(
            access_token=access_token,
            client_id=client.client_id,
            scopes=scopes,
            expires_at=self.clock.now() + timedelta(seconds=self.access_token_ttl_seconds),
            user_id=user_id,
        )
        await self.store.set(
            TOKEN_PREFIX + access_token,
            record.to_payload(),
            self.access_token_ttl_seconds * 1000,
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=self.access_token_ttl_seconds,
            scope=" ".join(scopes),
        )

    def _live_code(self, data: Any) -> Optional[AuthorizationCode]:
        if not isinstance(data, dict):
            return None
        grant = AuthorizationCode.from_payload(data)
        if grant.expires_at is None or grant.expires_at <= self.clock.now():
            return None
        return grant

    # -- userinfo ----------------------------------------------------------

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        parts = authorization.split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            return None
        return parts[1]

    async def userinfo(self, authorization: Optional[str]) -> Dict[str, Any]:
        token = self.extract_bearer(authorization)
        if not token:
            raise MissingTokenError()
        data = await self.store.get(TOKEN_PREFIX + token)
        if not isinstance(data, dict):
            raise InvalidOrExpiredTokenError()
        record = OAuthAccessToken.from_payload(data)
        if record.expires_at is None or record.expires_at <= self.clock.now():
            raise InvalidOrExpiredTokenError()
        if not record.user_id:
            raise NoUserContextError()
        user = self.users.get_user(record.user_id)
        if not user:
            raise InvalidOrExpiredTokenError()

        info: Dict[str, Any] = {"sub": user.id, "username": user.username}
        scopes = set(record.scopes)
        if "email" in scopes or "openid" in scopes:
            info["email"] = user.email
        if "phone" in scopes:
            info["phone"] = user.phone
        if "profile" in scopes:
            info["nickname"] = user.nickname
            info["avatar_url"] = user.avatar_url
        return info
