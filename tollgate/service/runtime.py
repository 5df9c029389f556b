from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tollgate.clock import Clock, SystemClock
from tollgate.config import Settings, get_settings, reset_settings_cache
from tollgate.logging import get_logger
from tollgate.service.audit import AuditSink, LoggingAuditSink
from tollgate.service.auth import AuthOrchestrator
from tollgate.service.notifications import LoggingNotifier, Notifier
from tollgate.service.oauth_server import OAuthAuthorizationServer
from tollgate.service.passwords import Argon2PasswordHasher
from tollgate.service.recovery_codes import RecoveryCodeService
from tollgate.service.tokens import TokenService
from tollgate.service.totp import TotpService
from tollgate.service.two_factor import TwoFactorService
from tollgate.storage.expiring import ExpiringStore, MemoryExpiringStore
from tollgate.storage.memory import MemoryUserStore
from tollgate.storage.redis_cache import RedisExpiringStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        users: Optional[MemoryUserStore] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock: Clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.users = users or MemoryUserStore()
        self.store = self._build_expiring_store()

        self.password_hasher = Argon2PasswordHasher()
        self.audit = audit or LoggingAuditSink()
        self.notifier = notifier or LoggingNotifier(base_url=self.settings.app_base_url)
        self.tokens = TokenService(self.settings, self.store, self.users, clock=self.clock)
        self.totp = TotpService(
            issuer=self.settings.totp_issuer,
            drift_steps=self.settings.totp_drift_steps,
            clock=self.clock,
        )
        self.recovery_codes = RecoveryCodeService(self.password_hasher)
        self.two_factor = TwoFactorService(
            self.users,
            self.store,
            self.totp,
            self.recovery_codes,
            self.password_hasher,
            encryption_key=self.settings.mfa_key_material,
            pending_login_ttl_seconds=self.settings.pending_login_ttl_seconds,
            recovery_code_count=self.settings.recovery_code_count,
            clock=self.clock,
        )
        self.auth = AuthOrchestrator(
            self.users,
            self.password_hasher,
            self.tokens,
            self.two_factor,
            self.store,
            audit=self.audit,
            notifier=self.notifier,
            password_reset_ttl_seconds=self.settings.password_reset_ttl_seconds,
            clock=self.clock,
        )
        self.oauth = OAuthAuthorizationServer(
            self.users,
            self.store,
            code_ttl_seconds=self.settings.oauth_code_ttl_seconds,
            access_token_ttl_seconds=self.settings.oauth_access_token_ttl_seconds,
            client_ttl_seconds=self.settings.oauth_client_ttl_seconds,
            clock=self.clock,
        )
        logger.info(
            "runtime_init_completed",
            store_type="memory" if isinstance(self.store, MemoryExpiringStore) else "redis",
        )

    def _build_expiring_store(self) -> ExpiringStore:
        if self.settings.use_memory_store:
            return MemoryExpiringStore(self.clock)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisExpiringStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode:
            raise RuntimeError(
                "Redis is required for token revocation, pending logins and OAuth grants; "
                "start Redis or set USE_MEMORY_STORE=true for a single-node deployment."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Running without Redis under TEST_MODE; ephemeral state is process-local.",
        )
        return MemoryExpiringStore(self.clock)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisExpiringStore):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.store.close())
            else:
                loop.create_task(runtime.store.close())
        reset_settings_cache()
        runtime = Runtime()
        return runtime
