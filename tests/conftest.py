import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settings are read from the environment on first use; pin them before imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from passage.config import Settings  # noqa: E402
from passage.service.passwords import PasswordHasher  # noqa: E402
from passage.service.rate_limit import AttemptLimiter  # noqa: E402
from passage.service.runtime import reset_runtime_for_tests  # noqa: E402
from passage.service.sessions import SessionManager  # noqa: E402
from passage.service.tokens import TokenIssuer  # noqa: E402
from passage.service.two_factor import TwoFactorAuthenticator  # noqa: E402
from passage.service.verification import VerificationCodeService  # noqa: E402
from passage.storage.memory import MemoryCounterStore, MemoryStore  # noqa: E402
from passage.storage.models import PROVIDER_PASSWORD  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STRONG_PASSWORD = "Str0ng#Pass"


class FakeClock:
    """Settable UTC clock; the start instant sits on a 30 second TOTP boundary."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_JWT_SECRET, test_mode=True, environment="test")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def passwords():
    # Minimal argon2 cost keeps the suite fast
    return PasswordHasher(time_cost=1, memory_cost=8 * 1024, parallelism=1)


@pytest.fixture
def tokens(store, settings, clock):
    return TokenIssuer(store, settings, clock=clock)


@pytest.fixture
def two_factor(store, settings, clock):
    return TwoFactorAuthenticator(store, settings, clock=clock.timestamp)


@pytest.fixture
def verification(store, settings, clock):
    return VerificationCodeService(store, settings, clock=clock)


@pytest.fixture
def counters():
    return MemoryCounterStore()


@pytest.fixture
def limiter(counters):
    return AttemptLimiter(counters)


@pytest.fixture
def build_sessions(store, passwords, settings, clock, limiter):
    """Factory for a SessionManager sharing the test store and clock."""

    def _build(settings_overrides=None, **kwargs):
        cfg = settings.model_copy(update=settings_overrides or {})
        kwargs.setdefault("limiter", limiter)
        return SessionManager(
            store,
            TokenIssuer(store, cfg, clock=clock),
            passwords,
            TwoFactorAuthenticator(store, cfg, clock=clock.timestamp),
            VerificationCodeService(store, cfg, clock=clock),
            cfg,
            **kwargs,
        )

    return _build


@pytest.fixture
def sessions(build_sessions):
    return build_sessions()


@pytest.fixture
def password_account(store, passwords):
    """Create an account with a password login bound to ``email``."""

    def _create(email="person@example.com", password=STRONG_PASSWORD, *, verified=True, role="user"):
        account, associate = store.create_account_with_associate(
            provider=PROVIDER_PASSWORD,
            provider_ref_id=email,
            role=role,
            nickname=email.split("@")[0],
            email=email,
            email_verified=verified,
            password_hash=passwords.hash(password),
        )
        return account, associate

    return _create


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
