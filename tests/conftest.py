import asyncio
import inspect
import os
import sys
import tempfile
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessiongate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SWEEPER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessiongate.config import ConflictScope, SessionPolicy, TrustMode  # noqa: E402
from sessiongate.service.fingerprint import DeviceFingerprinter  # noqa: E402
from sessiongate.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessiongate.service.sessions import SessionService  # noqa: E402
from sessiongate.storage.memory import MemoryStore  # noqa: E402
from sessiongate.storage.session_cache import SessionCache  # noqa: E402

EPOCH = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock shared by a service and its cache."""

    def __init__(self, start: datetime = EPOCH):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class CountingStore:
    """Wraps a store and counts every method looked up on it."""

    def __init__(self, inner):
        self.inner = inner
        self.calls: Counter = Counter()

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if callable(attr) and not name.startswith("_"):
            self.calls[name] += 1
        return attr

    @property
    def total(self) -> int:
        return sum(self.calls.values())

    def reset(self) -> None:
        self.calls.clear()


def build_service(
    clock: FakeClock,
    *,
    store=None,
    ttl: timedelta = timedelta(hours=24),
    extension_interval: timedelta = timedelta(minutes=15),
    freshness: timedelta = timedelta(minutes=5),
    trust_mode: TrustMode = TrustMode.STRICT,
    conflict_scope: ConflictScope = ConflictScope.CREDENTIAL,
    recovery_enabled: bool = True,
    store_timeout: float = 5.0,
    create_max_retries: int = 3,
) -> SessionService:
    policy = SessionPolicy(
        ttl=ttl,
        extension_interval=extension_interval,
        conflict_scope=conflict_scope,
        recovery_enabled=recovery_enabled,
        store_timeout=store_timeout,
        create_max_retries=create_max_retries,
    )
    return SessionService(
        store if store is not None else CountingStore(MemoryStore()),
        SessionCache(freshness, clock=clock),
        DeviceFingerprinter(trust_mode),
        policy,
        clock=clock,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> CountingStore:
    return CountingStore(MemoryStore())


@pytest.fixture
def service(clock, store) -> SessionService:
    return build_service(clock, store=store)


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
