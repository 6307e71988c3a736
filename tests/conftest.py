import asyncio
import inspect
import os
import sys
from pathlib import Path
from types import SimpleNamespace

# Configure the environment before anything initializes settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-signing-key-Aq7#vR2!")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-signing-key-Zp4$kW9@")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.audit import AuditLogger  # noqa: E402
from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.guard import AuthGuard  # noqa: E402
from authcore.service.passwords import PasswordService  # noqa: E402
from authcore.service.rate_limit import MemoryRateLimitBackend, RateLimiter  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.sessions import SessionManager  # noqa: E402
from authcore.service.tokens import TokenConfig, TokenService  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402
from authcore.storage.models import Account, AccountRole, AccountStatus  # noqa: E402

TEST_PASSWORD = "Correct-Horse-9battery"


class FakeClock:
    """Manually advanced clock shared by the services under test."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        test_mode=True,
        jwt_access_secret="unit-access-signing-key-Hn3%cX8&",
        jwt_refresh_secret="unit-refresh-signing-key-Jd6*tB1^",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def stack(settings, clock):
    """Fully wired services over a memory store and a fake clock."""
    store = MemoryStore()
    passwords = PasswordService(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )
    tokens = TokenService(TokenConfig.from_settings(settings), clock=clock)
    sessions = SessionManager(
        store,
        ttl_seconds=settings.session_ttl_seconds,
        max_sessions_per_account=settings.max_sessions_per_account,
        timeout=settings.store_timeout_seconds,
        clock=clock,
    )
    limiter = RateLimiter(MemoryRateLimitBackend(clock=clock), clock=clock, timeout=1.0)
    audit = AuditLogger(clock=clock)
    auth = AuthService(
        store, tokens, sessions, limiter, passwords, settings, audit=audit, clock=clock
    )
    guard = AuthGuard(tokens, store, timeout=settings.store_timeout_seconds)
    return SimpleNamespace(
        store=store,
        passwords=passwords,
        tokens=tokens,
        sessions=sessions,
        limiter=limiter,
        audit=audit,
        auth=auth,
        guard=guard,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def make_account(stack):
    """Create an account directly in the store, bypassing registration."""

    def _make(
        email: str = "alice@example.com",
        *,
        password: str = TEST_PASSWORD,
        role: AccountRole = AccountRole.ADMIN,
        tenant_id: str = "tenant-a",
        status: AccountStatus = AccountStatus.ACTIVE,
    ) -> Account:
        account = Account.new(email, tenant_id, role=role)
        account.status = status
        account.email_verified = status == AccountStatus.ACTIVE
        return stack.store.create_account(account, stack.passwords.hash(password))

    return _make


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
