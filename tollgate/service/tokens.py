from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from tollgate.clock import Clock, SystemClock
from tollgate.config import Settings
from tollgate.logging import get_logger
from tollgate.service.errors import (
    AccountDisabledError,
    InvalidTokenError,
    RevokedTokenError,
    UserNotFoundError,
)
from tollgate.storage.common import UserStore
from tollgate.storage.expiring import ExpiringStore
from tollgate.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
BLACKLIST_PREFIX = "auth:blacklist:"
_REVOKED_SENTINEL = "1"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


def blacklist_key(token: str) -> str:
    return BLACKLIST_PREFIX + hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """Issues, validates, rotates and revokes signed session tokens.

    Tokens are HS256 JWTs carrying ``{sub, username, type, iss, jti, iat,
    exp}``. Revocation is a blacklist entry in the shared expiring store keyed
    by the token's SHA-256 digest, kept only as long as the token could still
    verify.
    """

    def __init__(
        self,
        settings: Settings,
        store: ExpiringStore,
        users: UserStore,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required to sign tokens")
        self.settings = settings
        self.store = store
        self.users = users
        self.clock: Clock = clock or SystemClock()
        self._secret = settings.jwt_secret.encode("utf-8")
        self.logger = get_logger(__name__)

    # -- public operations -------------------------------------------------

    def issue(self, user: User) -> TokenPair:
        now = int(self.clock.now().timestamp())
        access_ttl = self.settings.access_token_ttl_seconds
        refresh_ttl = self.settings.refresh_token_ttl_seconds
        access_token = self._encode_jwt(self._payload(user, ACCESS, now, access_ttl))
        refresh_token = self._encode_jwt(self._payload(user, REFRESH, now, refresh_ttl))
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_ttl,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        if await self.is_revoked(refresh_token):
            raise RevokedTokenError()
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("type") != REFRESH:
            raise InvalidTokenError()
        user = self._resolve_user(payload)
        # Claiming the blacklist slot is the rotation point: a concurrent
        # refresh with the same token loses here.
        claimed = await self.store.add(
            blacklist_key(refresh_token),
            _REVOKED_SENTINEL,
            max(1, self._remaining_ms(payload, self.settings.refresh_token_ttl_seconds)),
        )
        if not claimed:
            raise RevokedTokenError()
        pair = self.issue(user)
        self.logger.info("token_refreshed", user_id=user.id)
        return pair

    async def validate_access(self, access_token: str) -> User:
        if await self.is_revoked(access_token):
            raise RevokedTokenError()
        payload = self._decode_jwt(access_token)
        if not payload or payload.get("type") != ACCESS:
            raise InvalidTokenError()
        return self._resolve_user(payload)

    async def revoke(self, access_token: str) -> None:
        await self._blacklist(access_token, self.settings.access_token_ttl_seconds)

    async def revoke_refresh(self, refresh_token: str) -> None:
        await self._blacklist(refresh_token, self.settings.refresh_token_ttl_seconds)

    async def is_revoked(self, token: str) -> bool:
        if not token:
            return False
        return await self.store.get(blacklist_key(token)) is not None

    # -- helpers -----------------------------------------------------------

    def _payload(self, user: User, kind: str, now: int, ttl: int) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "sub": user.id,
            "username": user.username,
            "type": kind,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl,
        }

    def _resolve_user(self, payload: dict[str, Any]) -> User:
        user_id = payload.get("sub")
        user = self.users.get_user(user_id) if isinstance(user_id, str) else None
        if not user:
            raise UserNotFoundError()
        if user.is_disabled:
            raise AccountDisabledError()
        return user

    def _remaining_ms(self, payload: Optional[dict[str, Any]], default_seconds: int) -> int:
        if payload:
            try:
                remaining = float(payload["exp"]) - self.clock.now().timestamp()
            except (KeyError, TypeError, ValueError):
                remaining = None
            if remaining is not None:
                return int(remaining * 1000)
        return default_seconds * 1000

    async def _blacklist(self, token: str, default_seconds: int) -> None:
        if not token:
            return
        payload = self._decode_jwt(token, verify_exp=False)
        ttl_ms = self._remaining_ms(payload, default_seconds)
        if ttl_ms <= 0:
            # Already expired; signature checks reject it without an entry
            return
        await self.store.set(blacklist_key(token), _REVOKED_SENTINEL, ttl_ms)
        self.logger.info(
            "token_revoked",
            user_id=payload.get("sub") if payload else None,
            kind=payload.get("type") if payload else None,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if verify_exp:
            try:
                exp_ts = float(payload.get("exp"))
            except (TypeError, ValueError):
                return None
            if exp_ts <= self.clock.now().timestamp():
                return None
        return payload
