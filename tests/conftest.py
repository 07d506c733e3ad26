import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tessera_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps the runtime on the in-process cache; set it to run against Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tessera.config import Settings  # noqa: E402
from tessera.service.engine import SessionEngine  # noqa: E402
from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessera.service.secrets import SettingsSecretProvider, SigningKeyHolder  # noqa: E402
from tessera.storage.local_cache import MemoryCache  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402

TEST_SIGNING_KEY = "unit-test-signing-key-0123456789-abcdefghijklmnop"


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


def build_engine(settings: Settings, store, cache) -> SessionEngine:
    keys = SigningKeyHolder(
        SettingsSecretProvider(settings),
        refresh_seconds=settings.signing_key_refresh_seconds,
        max_stale_seconds=settings.signing_key_max_stale_seconds,
    )
    return SessionEngine.from_settings(settings, store=store, cache=cache, keys=keys)


@pytest.fixture
def settings():
    """Settings tuned for unit tests: fixed key, no retry backoff."""
    return Settings(
        jwt_secret=TEST_SIGNING_KEY,
        jwt_issuer="tessera-test",
        jwt_audience="tessera-test-clients",
        read_retry_backoff_ms=0,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def engine(settings, store, cache):
    return build_engine(settings, store, cache)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "Alice", roles=["user"])


@pytest.fixture
def make_engine(store, cache):
    """Build an engine over the shared store/cache with adjusted settings."""

    def _make(settings: Settings) -> SessionEngine:
        return build_engine(settings, store, cache)

    return _make
