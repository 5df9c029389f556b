from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``. Expired and absent artifacts share one error class.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


# Credentials and session tokens


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"
    default_message = "invalid credentials"


class RevokedTokenError(AuthenticationError):
    error_code = "token_revoked"
    default_message = "token has been revoked"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"
    default_message = "invalid or expired token"


class UserNotFoundError(AuthenticationError):
    error_code = "user_not_found"
    default_message = "user not found"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"
    default_message = "user account is disabled"


class InvalidPasswordError(AuthenticationError):
    error_code = "invalid_password"
    default_message = "invalid password"


class InvalidResetTokenError(ValidationError):
    error_code = "invalid_reset_token"
    default_message = "invalid or expired password reset token"


# Two-factor


class InvalidOrExpiredSessionError(AuthenticationError):
    error_code = "invalid_session"
    default_message = "invalid or expired 2FA session"


class InvalidCodeError(ValidationError):
    error_code = "invalid_code"
    default_message = "invalid verification code"


class InvalidRecoveryCodeError(AuthenticationError):
    error_code = "invalid_recovery_code"
    default_message = "invalid recovery code"


class MfaAlreadyEnabledError(ConflictError):
    error_code = "mfa_already_enabled"
    default_message = "2FA is already enabled"


class MfaNotEnabledError(ValidationError):
    error_code = "mfa_not_enabled"
    default_message = "2FA is not enabled"


class ConcurrentUpdateError(ConflictError):
    default_message = "account was modified by another request; retry"


# Embedded OAuth2 provider


class InvalidClientError(AuthenticationError):
    error_code = "invalid_client"
    default_message = "invalid client"


class InvalidRedirectUriError(ValidationError):
    error_code = "invalid_redirect_uri"
    default_message = "invalid redirect_uri"


class InvalidOrExpiredCodeError(ValidationError):
    error_code = "invalid_grant"
    default_message = "invalid or expired authorization code"


class ClientMismatchError(ValidationError):
    error_code = "invalid_grant"
    default_message = "authorization code does not belong to this client"


class RedirectUriMismatchError(ValidationError):
    error_code = "invalid_grant"
    default_message = "redirect_uri mismatch"


class UnsupportedGrantTypeError(ValidationError):
    error_code = "unsupported_grant_type"
    default_message = "unsupported grant_type"


class MissingCodeError(ValidationError):
    error_code = "invalid_request"
    default_message = "missing code parameter"


class MissingTokenError(AuthenticationError):
    error_code = "missing_token"
    default_message = "missing access token"


class InvalidOrExpiredTokenError(AuthenticationError):
    error_code = "invalid_token"
    default_message = "invalid or expired access token"


class NoUserContextError(ForbiddenError):
    error_code = "insufficient_scope"
    default_message = "token does not have user context"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "InvalidCredentialsError",
    "RevokedTokenError",
    "InvalidTokenError",
    "UserNotFoundError",
    "AccountDisabledError",
    "InvalidPasswordError",
    "InvalidResetTokenError",
    "InvalidOrExpiredSessionError",
    "InvalidCodeError",
    "InvalidRecoveryCodeError",
    "MfaAlreadyEnabledError",
    "MfaNotEnabledError",
    "ConcurrentUpdateError",
    "InvalidClientError",
    "InvalidRedirectUriError",
    "InvalidOrExpiredCodeError",
    "ClientMismatchError",
    "RedirectUriMismatchError",
    "UnsupportedGrantTypeError",
    "MissingCodeError",
    "MissingTokenError",
    "InvalidOrExpiredTokenError",
    "NoUserContextError",
]
