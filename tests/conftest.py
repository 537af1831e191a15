import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="docvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits fall back to the in-process token bucket unless REDIS_URL is exported
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("APP_BASE_URL", "http://testserver")
os.environ.setdefault("DOWNSTREAM_BACKOFF_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from docvault.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from docvault.storage.models import Role, UserStatus  # noqa: E402

PASSWORD = "CorrectHorse42!"


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
def runtime():
    return get_runtime()


@pytest.fixture
def make_user(runtime):
    """Create a user with a password in the runtime store."""

    def _make(
        email: str,
        tenant_id: str,
        *,
        password: str = PASSWORD,
        role: str = Role.USER,
        status: str = UserStatus.ACTIVE,
    ):
        user = runtime.store.create_user(email, tenant_id=tenant_id, role=role, status=status)
        asyncio.run(runtime.sessions.set_password(user.id, password))
        return user

    return _make


@pytest.fixture
def tenant(runtime):
    return runtime.store.create_tenant("Acme", tenant_id="acme")


@pytest.fixture
def other_tenant(runtime):
    return runtime.store.create_tenant("Globex", tenant_id="globex")


@pytest.fixture
def user(make_user, tenant):
    return make_user("alice@acme.test", tenant.id)
