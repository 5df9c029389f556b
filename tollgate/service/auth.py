from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from tollgate.clock import Clock, SystemClock
from tollgate.logging import get_logger
from tollgate.service.audit import AuditSink, safe_record
from tollgate.service.errors import (
    ConcurrentUpdateError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidOrExpiredSessionError,
    InvalidRecoveryCodeError,
    InvalidResetTokenError,
    MfaNotEnabledError,
    UserNotFoundError,
    ValidationError,
)
from tollgate.service.notifications import Notifier
from tollgate.service.passwords import PasswordHasher
from tollgate.service.tokens import TokenPair, TokenService
from tollgate.service.two_factor import TwoFactorService
from tollgate.storage.common import UserStore, parse_ip_address
from tollgate.storage.expiring import ExpiringStore
from tollgate.storage.models import PasswordResetTicket, PendingLogin, User, UserStatus

RESET_PREFIX = "auth:reset:"
MIN_PASSWORD_LENGTH = 8


@dataclass
class LoginContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None

    def audit_fields(self) -> dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_fingerprint": self.device_fingerprint,
        }


@dataclass
class LoginResult:
    user: User
    tokens: Optional[TokenPair] = None
    require_2fa: bool = False
    temp_token: Optional[str] = None
    recovery_codes_remaining: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "user": {
                "id": self.user.id,
                "username": self.user.username,
                "email": self.user.email,
                "phone": self.user.phone,
                "status": self.user.status.value,
            },
            "require_2fa": self.require_2fa,
        }
        if self.tokens:
            body.update(self.tokens.to_dict())
        if self.temp_token:
            body["temp_token"] = self.temp_token
        if self.recovery_codes_remaining is not None:
            body["recovery_codes_remaining"] = self.recovery_codes_remaining
        return body


def _reset_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _reset_key(digest: str) -> str:
    return RESET_PREFIX + digest


def _reset_owner_key(user_id: str) -> str:
    # Points at the digest of the only reset token a user may still redeem
    return RESET_PREFIX + "user:" + user_id


class AuthOrchestrator:
    """Password login front door.

    Decides whether a verified login finishes immediately or parks in the
    pending two-factor state, and hands session tokens out only once every
    required factor has been proven.
    """

    def __init__(
        self,
        users: UserStore,
        password_hasher: PasswordHasher,
        tokens: TokenService,
        two_factor: TwoFactorService,
        store: ExpiringStore,
        *,
        audit: Optional[AuditSink] = None,
        notifier: Optional[Notifier] = None,
        password_reset_ttl_seconds: int = 900,
        clock: Optional[Clock] = None,
    ) -> None:
        self.users = users
        self.password_hasher = password_hasher
        self.tokens = tokens
        self.two_factor = two_factor
        self.store = store
        self.audit = audit
        self.notifier = notifier
        self.password_reset_ttl = timedelta(seconds=password_reset_ttl_seconds)
        self.clock: Clock = clock or SystemClock()
        self.logger = get_logger(__name__)
        self._decoy_hash: Optional[str] = None

    def _burn_password_check(self, password: str) -> None:
        """Spend one hash verification so unknown accounts cost the same as known ones."""
        if self._decoy_hash is None:
            self._decoy_hash = self.password_hasher.hash(secrets.token_urlsafe(16))
        self.password_hasher.verify(self._decoy_hash, password or "")

    def _record(
        self,
        user_id: Optional[str],
        outcome: str,
        reason: Optional[str],
        context: LoginContext,
        **extra: Any,
    ) -> None:
        safe_record(self.audit, user_id, outcome, reason, **context.audit_fields(), **extra)

    def _reject(
        self, user_id: Optional[str], reason: str, context: LoginContext, **extra: Any
    ) -> InvalidCredentialsError:
        self._record(user_id, "failure", reason, context, **extra)
        self.logger.warning("login_failed", user_id=user_id, reason=reason)
        return InvalidCredentialsError()

    async def login(
        self, username: str, password: str, context: Optional[LoginContext] = None
    ) -> LoginResult:
        context = context or LoginContext()
        user = self.users.get_user_by_username(username or "")
        if not user:
            self._burn_password_check(password)
            raise self._reject(None, "user_not_found", context, method="password")
        if not user.password_hash:
            self._burn_password_check(password)
            raise self._reject(user.id, "no_password_set", context, method="password")
        if not self.password_hasher.verify(user.password_hash, password):
            raise self._reject(user.id, "invalid_password", context, method="password")
        if user.is_disabled:
            raise self._reject(user.id, "account_disabled", context, method="password")

        user = self._record_login(user, context)

        if user.mfa_enabled:
            temp_token = await self.two_factor.create_pending_login(user.id, user.username)
            self._record(user.id, "challenge", "mfa_required", context, method="password")
            self.logger.info("login_requires_2fa", user_id=user.id)
            return LoginResult(user=user, require_2fa=True, temp_token=temp_token)

        self._record(user.id, "success", None, context, method="password")
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, tokens=self.tokens.issue(user))

    def _record_login(self, user: User, context: LoginContext) -> User:
        fields: dict[str, Any] = {
            "last_login_at": self.clock.now(),
            "last_login_ip": parse_ip_address(context.ip_address),
        }
        if user.status == UserStatus.PENDING:
            # First successful sign-in activates the account
            fields["status"] = UserStatus.ACTIVE
        return self.users.update_user(user.id, fields)

    async def complete_two_factor_login(
        self, temp_token: str, context: Optional[LoginContext] = None
    ) -> LoginResult:
        context = context or LoginContext()
        pending = await self.two_factor.complete_pending_login(temp_token)
        if pending is None:
            raise InvalidOrExpiredSessionError()
        return self._finish_two_factor(pending, context, method="2fa")

    def _finish_two_factor(
        self, pending: PendingLogin, context: LoginContext, *, method: str
    ) -> LoginResult:
        user = self.users.get_user(pending.user_id)
        if not user:
            raise self._reject(pending.user_id, "user_not_found", context, method=method)
        if user.is_disabled:
            raise self._reject(user.id, "account_disabled", context, method=method)
        self._record(user.id, "success", None, context, method=method)
        self.logger.info("two_factor_login_completed", user_id=user.id, method=method)
        return LoginResult(user=user, tokens=self.tokens.issue(user))

    async def verify_two_factor_login(
        self, temp_token: str, code: str, context: Optional[LoginContext] = None
    ) -> LoginResult:
        context = context or LoginContext()
        pending = await self.two_factor.validate_pending_login(temp_token)
        if pending is None:
            raise InvalidOrExpiredSessionError()
        try:
            verified = await self.two_factor.verify(pending.user_id, code)
        except UserNotFoundError:
            raise self._reject(pending.user_id, "user_not_found", context, method="2fa")
        except MfaNotEnabledError:
            # Factor switched off after the password step
            self._record(pending.user_id, "failure", "mfa_not_enabled", context, method="2fa")
            await self.two_factor.complete_pending_login(temp_token)
            raise InvalidOrExpiredSessionError()
        if not verified:
            self._record(pending.user_id, "failure", "invalid_2fa_code", context, method="2fa")
            raise InvalidCodeError()
        return await self.complete_two_factor_login(temp_token, context)

    async def recover_two_factor_login(
        self, temp_token: str, recovery_code: str, context: Optional[LoginContext] = None
    ) -> LoginResult:
        context = context or LoginContext()
        # Claim the pending login before spending a recovery code on it
        pending = await self.two_factor.complete_pending_login(temp_token)
        if pending is None:
            raise InvalidOrExpiredSessionError()
        try:
            remaining = await self.two_factor.verify_recovery_code(
                pending.user_id, recovery_code
            )
        except InvalidRecoveryCodeError:
            self._record(
                pending.user_id, "failure", "invalid_recovery_code", context,
                method="recovery_code",
            )
            await self.two_factor.restore_pending_login(temp_token, pending)
            raise
        except ConcurrentUpdateError:
            await self.two_factor.restore_pending_login(temp_token, pending)
            raise
        except UserNotFoundError:
            raise self._reject(
                pending.user_id, "user_not_found", context, method="recovery_code"
            )
        except MfaNotEnabledError:
            self._record(
                pending.user_id, "failure", "mfa_not_enabled", context,
                method="recovery_code",
            )
            raise InvalidOrExpiredSessionError()
        result = self._finish_two_factor(pending, context, method="recovery_code")
        result.recovery_codes_remaining = remaining
        return result

    async def refresh(self, refresh_token: str) -> TokenPair:
        return await self.tokens.refresh(refresh_token)

    async def logout(
        self, user_id: str, access_token: str, refresh_token: Optional[str] = None
    ) -> None:
        await self.tokens.revoke(access_token)
        if refresh_token:
            await self.tokens.revoke_refresh(refresh_token)
        self.logger.info(
            "user_logged_out", user_id=user_id, refresh_revoked=bool(refresh_token)
        )

    async def request_password_reset(self, email: str) -> None:
        """Start a password reset; the outcome is the same whether or not the account exists."""
        user = self.users.get_user_by_email(email) if email else None
        if not user or not user.password_hash or user.is_disabled:
            self.logger.info("password_reset_requested", matched=False)
            return None
        token = secrets.token_urlsafe(32)
        digest = _reset_digest(token)
        ttl_ms = int(self.password_reset_ttl.total_seconds() * 1000)
        ticket = PasswordResetTicket(
            user_id=user.id, expires_at=self.clock.now() + self.password_reset_ttl
        )
        owner_key = _reset_owner_key(user.id)
        previous = await self.store.get(owner_key)
        if isinstance(previous, str):
            await self.store.delete(_reset_key(previous))
        await self.store.set(_reset_key(digest), ticket.to_payload(), ttl_ms)
        await self.store.set(owner_key, digest, ttl_ms)
        if self.notifier:
            try:
                await self.notifier.send_password_reset(user, token)
            except Exception as exc:
                # Same outcome as an unknown address; the unsent ticket is dropped
                await self.store.delete(_reset_key(digest))
                self.logger.warning(
                    "password_reset_notification_failed", user_id=user.id, error=str(exc)
                )
                return None
        self.logger.info("password_reset_requested", matched=True, user_id=user.id)
        return None

    async def reset_password(self, token: str, new_password: str) -> None:
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if not token:
            raise InvalidResetTokenError()
        digest = _reset_digest(token)
        data = await self.store.pop(_reset_key(digest))
        if not isinstance(data, dict):
            self.logger.warning("password_reset_invalid_token")
            raise InvalidResetTokenError()
        ticket = PasswordResetTicket.from_payload(data)
        if ticket.expires_at is None or ticket.expires_at <= self.clock.now():
            self.logger.warning("password_reset_expired", user_id=ticket.user_id)
            raise InvalidResetTokenError()
        owner_key = _reset_owner_key(ticket.user_id)
        if await self.store.get(owner_key) != digest:
            self.logger.warning("password_reset_superseded", user_id=ticket.user_id)
            raise InvalidResetTokenError()
        await self.store.delete(owner_key)
        user = self.users.get_user(ticket.user_id)
        if not user:
            self.logger.warning("password_reset_missing_user", user_id=ticket.user_id)
            raise InvalidResetTokenError()
        self.users.update_user(
            user.id, {"password_hash": self.password_hasher.hash(new_password)}
        )
        self.logger.info("password_reset_completed", user_id=user.id)
