import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="lostfound_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps tokens, guards and rate limits in process
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

from lostfound.config import get_settings  # noqa: E402
from lostfound.service.auth import AuthService  # noqa: E402
from lostfound.service.runtime import reset_runtime_for_tests  # noqa: E402
from lostfound.storage.memory import MemoryStore  # noqa: E402
from lostfound.storage.models import ROLE_ADMIN  # noqa: E402

PASSWORD = "CorrectHorse9"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    # The memory store snapshots to SHARED_FS_ROOT; a fresh root keeps tests isolated
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("runtime")))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store(tmp_path, settings):
    return MemoryStore(fs_root=str(tmp_path), encryption_key=settings.secret_key)


@pytest.fixture
def auth(store, settings):
    return AuthService(store, None, settings)


@pytest.fixture
def make_user(store, auth):
    """Create a confirmed account with ``PASSWORD``; pass ``role=ROLE_ADMIN`` for staff."""
    counter = {"n": 0}

    def _make(name: str = "Juan Dela Cruz", *, role: str = "finder", confirmed: bool = True):
        counter["n"] += 1
        n = counter["n"]
        user = store.create_user(
            f"user{n}@plv.edu.ph",
            full_name=name,
            student_id=None if role == ROLE_ADMIN else f"23-{n:04d}",
            role=role,
            email_confirmed=confirmed,
        )
        auth.save_password(user.id, PASSWORD)
        return user

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
