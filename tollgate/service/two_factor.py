from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from tollgate.clock import Clock, SystemClock
from tollgate.logging import get_logger
from tollgate.service.errors import (
    ConcurrentUpdateError,
    InvalidCodeError,
    InvalidPasswordError,
    InvalidRecoveryCodeError,
    MfaAlreadyEnabledError,
    MfaNotEnabledError,
    UserNotFoundError,
    ValidationError,
)
from tollgate.service.passwords import PasswordHasher
from tollgate.service.recovery_codes import DEFAULT_CODE_COUNT, RecoveryCodeService
from tollgate.service.totp import TotpService
from tollgate.storage.common import UserStore
from tollgate.storage.errors import StaleUpdateError
from tollgate.storage.expiring import ExpiringStore
from tollgate.storage.models import PendingLogin, User

PENDING_LOGIN_PREFIX = "auth:2fa:pending:"


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    recovery_codes: List[str]


@dataclass
class TwoFactorStatus:
    enabled: bool
    recovery_codes_remaining: int


class TwoFactorService:
    """Owns a user's second factor and the pending-login handoff.

    Per user the factor moves ``disabled -> pending confirmation -> enabled``.
    The middle state lives only with the client: ``enable`` hands out a secret
    and recovery codes without persisting anything, and ``confirm_enable``
    writes all three MFA fields at once after a valid code. Every
    read-modify-write of the user record is version checked.
    """

    def __init__(
        self,
        users: UserStore,
        store: ExpiringStore,
        totp: TotpService,
        recovery_codes: RecoveryCodeService,
        password_hasher: PasswordHasher,
        *,
        encryption_key: str,
        pending_login_ttl_seconds: int = 300,
        recovery_code_count: int = DEFAULT_CODE_COUNT,
        clock: Optional[Clock] = None,
    ) -> None:
        self.users = users
        self.store = store
        self.totp = totp
        self.recovery_codes = recovery_codes
        self.password_hasher = password_hasher
        self.pending_login_ttl = timedelta(seconds=pending_login_ttl_seconds)
        self.recovery_code_count = recovery_code_count
        self.clock: Clock = clock or SystemClock()
        self.logger = get_logger(__name__)
        self._cipher = self._build_cipher(encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise ValueError("MFA encryption key material is required")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, ciphertext: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _get_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    def _update(self, user: User, fields: Dict[str, Any]) -> User:
        try:
            return self.users.update_user(user.id, fields, expected_version=user.version)
        except StaleUpdateError as exc:
            self.logger.warning(
                "mfa_update_conflict",
                user_id=user.id,
                expected=exc.expected,
                actual=exc.actual,
            )
            raise ConcurrentUpdateError() from exc

    def _require_password(self, user: User, password: str) -> None:
        if not self.password_hasher.verify(user.password_hash, password):
            self.logger.warning("mfa_password_check_failed", user_id=user.id)
            raise InvalidPasswordError()

    # -- enrollment --------------------------------------------------------

    async def enable(self, user_id: str) -> TwoFactorSetup:
        user = self._get_user(user_id)
        if user.mfa_enabled:
            raise MfaAlreadyEnabledError()
        setup = self.totp.generate_secret(user.username)
        codes = self.recovery_codes.generate(self.recovery_code_count)
        return TwoFactorSetup(
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            recovery_codes=codes,
        )

    async def confirm_enable(
        self, user_id: str, secret: str, code: str, recovery_codes: List[str]
    ) -> None:
        user = self._get_user(user_id)
        if user.mfa_enabled:
            raise MfaAlreadyEnabledError()
        if not self.totp.verify(secret, code):
            raise InvalidCodeError()
        if not recovery_codes:
            raise ValidationError("recovery codes are required")
        try:
            hashed = self.recovery_codes.hash(recovery_codes)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        self._update(
            user,
            {
                "mfa_enabled": True,
                "mfa_secret": self._encrypt_secret(secret),
                "recovery_codes": hashed,
            },
        )
        self.logger.info("mfa_enabled", user_id=user_id)

    async def disable(self, user_id: str, password: str) -> None:
        user = self._get_user(user_id)
        if not user.mfa_enabled:
            raise MfaNotEnabledError()
        self._require_password(user, password)
        self._update(
            user, {"mfa_enabled": False, "mfa_secret": None, "recovery_codes": None}
        )
        self.logger.info("mfa_disabled", user_id=user_id)

    # -- verification ------------------------------------------------------

    async def verify(self, user_id: str, code: str) -> bool:
        user = self._get_user(user_id)
        if not user.mfa_enabled or not user.mfa_secret:
            raise MfaNotEnabledError()
        secret = self._decrypt_secret(user.mfa_secret)
        if secret is None:
            return False
        return self.totp.verify(secret, code)

    async def verify_recovery_code(self, user_id: str, code: str) -> int:
        """Redeem one recovery code; returns how many remain."""
        user = self._get_user(user_id)
        if not user.mfa_enabled or user.recovery_codes is None:
            raise MfaNotEnabledError()
        index = self.recovery_codes.verify(user.recovery_codes, code)
        if index < 0:
            self.logger.warning("recovery_code_rejected", user_id=user_id)
            raise InvalidRecoveryCodeError()
        remaining = self.recovery_codes.consume(user.recovery_codes, index)
        self._update(user, {"recovery_codes": remaining})
        self.logger.info(
            "recovery_code_consumed", user_id=user_id, remaining=len(remaining)
        )
        return len(remaining)

    async def regenerate_recovery_codes(self, user_id: str, password: str) -> List[str]:
        user = self._get_user(user_id)
        if not user.mfa_enabled:
            raise MfaNotEnabledError()
        self._require_password(user, password)
        codes = self.recovery_codes.generate(self.recovery_code_count)
        self._update(user, {"recovery_codes": self.recovery_codes.hash(codes)})
        self.logger.info("recovery_codes_regenerated", user_id=user_id)
        return codes

    async def status(self, user_id: str) -> TwoFactorStatus:
        user = self._get_user(user_id)
        return TwoFactorStatus(
            enabled=user.mfa_enabled,
            recovery_codes_remaining=(
                self.recovery_codes.count_remaining(user.recovery_codes)
                if user.mfa_enabled
                else 0
            ),
        )

    # -- pending logins ----------------------------------------------------

    async def create_pending_login(self, user_id: str, username: str) -> str:
        temp_token = secrets.token_urlsafe(32)
        pending = PendingLogin(
            user_id=user_id,
            username=username,
            expires_at=self.clock.now() + self.pending_login_ttl,
        )
        await self.store.set(
            PENDING_LOGIN_PREFIX + temp_token,
            pending.to_payload(),
            int(self.pending_login_ttl.total_seconds() * 1000),
        )
        self.logger.info("pending_login_created", user_id=user_id)
        return temp_token

    async def validate_pending_login(self, temp_token: str) -> Optional[PendingLogin]:
        """Look up a pending login without consuming it."""
        if not temp_token:
            return None
        data = await self.store.get(PENDING_LOGIN_PREFIX + temp_token)
        return self._live_pending(data)

    async def complete_pending_login(self, temp_token: str) -> Optional[PendingLogin]:
        """Consume a pending login; only one caller ever gets it back."""
        if not temp_token:
            return None
        data = await self.store.pop(PENDING_LOGIN_PREFIX + temp_token)
        return self._live_pending(data)

    async def restore_pending_login(self, temp_token: str, pending: PendingLogin) -> bool:
        """Re-park a claimed pending login for its remaining lifetime.

        Never extends the original deadline and never overwrites a login
        parked under the same token meanwhile.
        """
        remaining = pending.expires_at - self.clock.now()
        ttl_ms = int(remaining.total_seconds() * 1000)
        if not temp_token or ttl_ms <= 0:
            return False
        return await self.store.add(
            PENDING_LOGIN_PREFIX + temp_token, pending.to_payload(), ttl_ms
        )

    def _live_pending(self, data: Any) -> Optional[PendingLogin]:
        if not isinstance(data, dict):
            return None
        try:
            pending = PendingLogin.from_payload(data)
        except (KeyError, TypeError, ValueError):
            self.logger.warning("pending_login_malformed")
            return None
        if pending.expires_at is None or pending.expires_at <= self.clock.now():
            return None
        return pending
