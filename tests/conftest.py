import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="quillpress_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
# Rate limit counters and OAuth state must not leak between tests through a shared Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from quillpress.service.runtime import reset_runtime_for_tests  # noqa: E402
from quillpress.storage.interfaces import ManualClock  # noqa: E402
from quillpress.storage.memory import MemoryKeyValueStore, MemoryUserDirectory  # noqa: E402
from quillpress.storage.models import User  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def users():
    return MemoryUserDirectory()


@pytest.fixture
def make_user(users):
    """Factory inserting a user into the memory directory."""

    counter = {"n": 0}

    def _make(role: str = "user", *, is_active: bool = True, email: str | None = None) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            id=f"user-{n}",
            email=email or f"user{n}@example.com",
            username=f"user{n}",
            github_id=1000 + n,
            name=f"User {n}",
            role=role,
            is_active=is_active,
        )
        return users.add_user(user)

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
