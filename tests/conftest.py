import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment defaults must be in place before otcauth reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-process cache without a connection attempt
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from otcauth.config import Settings, reset_settings_cache  # noqa: E402
from otcauth.service.runtime import Runtime  # noqa: E402
from otcauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402


class RecordingCodeSink:
    """Captures delivered codes so a test can complete the login."""

    def __init__(self):
        self.deliveries = []

    def on_code_generated(self, phone_number, code, expires_at):
        self.deliveries.append((phone_number, code, expires_at))

    def last_code_for(self, phone_number):
        for phone, code, _ in reversed(self.deliveries):
            if phone == phone_number:
                return code
        raise LookupError(phone_number)


class FakeClock:
    """Manually advanced wall clock for MemoryCache TTL bookkeeping."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _make_settings(**overrides) -> Settings:
    base = {
        "test_mode": True,
        "use_memory_store": True,
        "redis_url": "",
        "jwt_secret": "test-secret-key-for-testing-only-do-not-use-in-production",
    }
    base.update(overrides)
    return Settings(**base)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings_factory():
    return _make_settings


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_cache(fake_clock) -> MemoryCache:
    return MemoryCache(clock=fake_clock)


@pytest.fixture
def code_sink() -> RecordingCodeSink:
    return RecordingCodeSink()


@pytest.fixture
def runtime(settings, memory_store, memory_cache, code_sink) -> Runtime:
    return Runtime(settings, store=memory_store, cache=memory_cache, code_sink=code_sink)


@pytest.fixture
def auth_service(runtime):
    return runtime.auth


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
