from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_ERROR_CODE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
MAX_REDIRECT_URIS = 10
MAX_SCOPES = 20


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="Stable snake_case error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE_PATTERN.match(value):
            raise ValueError(f"invalid error code: {value}")
        return value


class Envelope(BaseModel):
    """API envelope wrapping every non-OAuth response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# -- session auth -----------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class UserSummary(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str


class AuthResponse(BaseModel):
    user: UserSummary
    require_2fa: bool = False
    temp_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    recovery_codes_remaining: Optional[int] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        if len(value) > 128:
            raise ValueError("password must be at most 128 characters")
        return value


# -- two-factor ---------------------------------------------------------------


class TwoFactorVerifyRequest(BaseModel):
    temp_token: str = Field(..., max_length=256)
    code: str = Field(..., max_length=10)


class TwoFactorRecoverRequest(BaseModel):
    temp_token: str = Field(..., max_length=256)
    recovery_code: str = Field(..., max_length=16)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    recovery_codes: List[str]


class TwoFactorConfirmRequest(BaseModel):
    secret: str = Field(..., max_length=128)
    code: str = Field(..., max_length=10)
    recovery_codes: List[str] = Field(..., min_length=1, max_length=50)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    recovery_codes_remaining: int


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


# -- embedded OAuth2 provider ---------------------------------------------------


class OAuthClientRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    redirect_uris: List[str] = Field(..., min_length=1, max_length=MAX_REDIRECT_URIS)
    scopes: Optional[List[str]] = Field(default=None, max_length=MAX_SCOPES)

    @field_validator("redirect_uris")
    @classmethod
    def _validate_redirect_uris(cls, value: List[str]) -> List[str]:
        for uri in value:
            if len(uri) > 2048:
                raise ValueError("redirect_uri too long")
        return value


class OAuthClientResponse(BaseModel):
    id: str
    client_id: str
    client_secret: Optional[str] = None
    name: str
    redirect_uris: List[str]
    scopes: List[str]
    created_at: Optional[str] = None


class AuthorizeResponse(BaseModel):
    redirect_url: str
