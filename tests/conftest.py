import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402
from argon2 import Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tollgate.clock import FrozenClock  # noqa: E402
from tollgate.config import Settings  # noqa: E402
from tollgate.service.audit import MemoryAuditSink  # noqa: E402
from tollgate.service.auth import AuthOrchestrator  # noqa: E402
from tollgate.service.notifications import MemoryNotifier  # noqa: E402
from tollgate.service.oauth_server import OAuthAuthorizationServer  # noqa: E402
from tollgate.service.passwords import Argon2PasswordHasher  # noqa: E402
from tollgate.service.recovery_codes import RecoveryCodeService  # noqa: E402
from tollgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from tollgate.service.tokens import TokenService  # noqa: E402
from tollgate.service.totp import TotpService  # noqa: E402
from tollgate.service.two_factor import TwoFactorService  # noqa: E402
from tollgate.storage.expiring import MemoryExpiringStore  # noqa: E402
from tollgate.storage.memory import MemoryUserStore  # noqa: E402

TEST_PASSWORD = "CorrectHorse42!"
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def hasher():
    """argon2id with minimal cost parameters so suites stay fast."""
    return Argon2PasswordHasher(
        Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def store(clock):
    return MemoryExpiringStore(clock)


@pytest.fixture
def users():
    return MemoryUserStore()


@pytest.fixture
def make_user(users, hasher):
    def _make(username="alice", password=TEST_PASSWORD, **fields):
        password_hash = hasher.hash(password) if password else None
        fields.setdefault("email", f"{username}@example.com")
        return users.create_user(username, password_hash=password_hash, **fields)

    return _make


@pytest.fixture
def token_service(settings, store, users, clock):
    return TokenService(settings, store, users, clock=clock)


@pytest.fixture
def totp(clock):
    return TotpService(issuer="Tollgate", drift_steps=1, clock=clock)


@pytest.fixture
def recovery_service(hasher):
    return RecoveryCodeService(hasher)


@pytest.fixture
def two_factor(users, store, totp, recovery_service, hasher, settings, clock):
    return TwoFactorService(
        users,
        store,
        totp,
        recovery_service,
        hasher,
        encryption_key=settings.mfa_key_material,
        pending_login_ttl_seconds=settings.pending_login_ttl_seconds,
        clock=clock,
    )


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def notifier():
    return MemoryNotifier()


@pytest.fixture
def orchestrator(users, hasher, token_service, two_factor, store, audit_sink, notifier, clock):
    return AuthOrchestrator(
        users,
        hasher,
        token_service,
        two_factor,
        store,
        audit=audit_sink,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def oauth_server(users, store, clock):
    return OAuthAuthorizationServer(users, store, clock=clock)


@pytest.fixture
def enroll_mfa(two_factor, totp):
    """Enable two-factor for a user; returns (secret, plaintext recovery codes)."""

    async def _enroll(user_id):
        setup = await two_factor.enable(user_id)
        code = totp.current_code(setup.secret)
        await two_factor.confirm_enable(user_id, setup.secret, code, setup.recovery_codes)
        return setup.secret, setup.recovery_codes

    return _enroll


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def wrong_code(totp, clock):
    """A six-digit code outside the accepted window for ``secret``."""

    def _wrong(secret):
        accepted = {
            totp.current_code(secret, at=clock.now() + timedelta(seconds=offset))
            for offset in (-30, 0, 30)
        }
        return next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)

    return _wrong
