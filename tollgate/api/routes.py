from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Form, Header, Query, Request
from fastapi.responses import JSONResponse

from tollgate.api.schemas import (
    AuthorizeResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OAuthClientRequest,
    OAuthClientResponse,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RecoveryCodesResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TwoFactorConfirmRequest,
    TwoFactorRecoverRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from tollgate.logging import get_logger
from tollgate.service.auth import LoginContext, LoginResult
from tollgate.service.errors import AuthenticationError, NotFoundError, ValidationError
from tollgate.service.oauth_server import OAuthAuthorizationServer
from tollgate.service.runtime import get_runtime
from tollgate.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass
class AuthContext:
    user: User
    access_token: str

    @property
    def user_id(self) -> str:
        return self.user.id


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = OAuthAuthorizationServer.extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    user = await runtime.tokens.validate_access(token)
    return AuthContext(user=user, access_token=token)


def _login_context(request: Request) -> LoginContext:
    return LoginContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        device_fingerprint=request.headers.get("X-Device-Fingerprint"),
    )


def _auth_envelope(result: LoginResult) -> Envelope:
    return Envelope(status="ok", data=AuthResponse(**result.to_dict()))


# -- session auth -----------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password, _login_context(request))
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenPairResponse(**pair.to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.user_id,
        principal.access_token,
        body.refresh_token if body else None,
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.verify_two_factor_login(
        body.temp_token, body.code, _login_context(request)
    )
    return _auth_envelope(result)


@router.post("/auth/2fa/recover", response_model=Envelope, tags=["auth"])
async def recover_two_factor(body: TwoFactorRecoverRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.recover_two_factor_login(
        body.temp_token, body.recovery_code, _login_context(request)
    )
    return _auth_envelope(result)


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the account exists, a reset link has been sent"},
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


# -- two-factor management --------------------------------------------------


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    setup = await runtime.two_factor.enable(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            recovery_codes=setup.recovery_codes,
        ),
    )


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["2fa"])
async def confirm_two_factor(
    body: TwoFactorConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.two_factor.confirm_enable(
        principal.user_id, body.secret, body.code, body.recovery_codes
    )
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.two_factor.disable(principal.user_id, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/recovery-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_recovery_codes(
    body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    codes = await runtime.two_factor.regenerate_recovery_codes(
        principal.user_id, body.password
    )
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.two_factor.status(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            recovery_codes_remaining=status.recovery_codes_remaining,
        ),
    )


# -- embedded OAuth2 provider -------------------------------------------------


@router.post("/oauth/clients", response_model=Envelope, tags=["oauth"])
async def register_oauth_client(
    body: OAuthClientRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    client = await runtime.oauth.register_client(
        principal.user_id, body.name, body.redirect_uris, body.scopes
    )
    payload = client.to_payload()
    # The secret is only ever returned here
    return Envelope(
        status="ok",
        data=OAuthClientResponse(
            id=payload["id"],
            client_id=payload["client_id"],
            client_secret=payload["client_secret"],
            name=payload["name"],
            redirect_uris=payload["redirect_uris"],
            scopes=payload["scopes"],
            created_at=payload["created_at"],
        ),
    )


@router.get("/oauth/clients/{client_id}", response_model=Envelope, tags=["oauth"])
async def get_oauth_client(client_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    client = await runtime.oauth.get_client(client_id)
    # Other users' clients read as absent
    if client is None or client.owner_user_id != principal.user_id:
        raise NotFoundError("client not found")
    return Envelope(status="ok", data=OAuthClientResponse(**client.public_view()))


@router.get("/oauth/authorize", response_model=Envelope, tags=["oauth"])
async def authorize(
    client_id: str = Query(..., max_length=64),
    redirect_uri: str = Query(..., max_length=2048),
    scope: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=512),
    response_type: str = Query("code", max_length=16),
    principal: AuthContext = Depends(get_user),
):
    if response_type != "code":
        raise ValidationError(
            "only response_type=code is supported", error_code="unsupported_response_type"
        )
    runtime = get_runtime()
    redirect_url = await runtime.oauth.authorize(
        principal.user_id, client_id, redirect_uri, scope=scope, state=state
    )
    return Envelope(status="ok", data=AuthorizeResponse(redirect_url=redirect_url))


@router.post("/oauth/token", tags=["oauth"])
async def oauth_token(
    grant_type: str = Form(..., max_length=64),
    client_id: str = Form(..., max_length=64),
    client_secret: str = Form(..., max_length=128),
    code: Optional[str] = Form(None, max_length=128),
    redirect_uri: Optional[str] = Form(None, max_length=2048),
    scope: Optional[str] = Form(None, max_length=512),
):
    runtime = get_runtime()
    response = await runtime.oauth.token(
        grant_type,
        client_id,
        client_secret,
        code=code,
        redirect_uri=redirect_uri,
        scope=scope,
    )
    return JSONResponse(content=response.to_dict(), headers=_NO_STORE_HEADERS)


@router.get("/oauth/userinfo", tags=["oauth"])
async def oauth_userinfo(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    return await runtime.oauth.userinfo(authorization)
