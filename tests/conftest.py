import asyncio
import inspect
import os
import tempfile

# Configure the environment before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="homeops_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "MFA_ENCRYPTION_KEY", "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
)
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GOOGLE_REDIRECT_URI_SIGNIN", "http://testserver/auth/google/callback")
os.environ.setdefault("GOOGLE_REDIRECT_URI_SIGNUP", "http://testserver/auth/google/callback")
os.environ.setdefault("APP_WEB_ORIGIN", "http://web.test")
# In-process fallback instead of Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from homeops import app as app_module  # noqa: E402
from homeops.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

DEFAULT_PASSWORD = "hunter22"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def make_user(runtime):
    """Factory: register a user with their own account and return (user, headers)."""

    def _make(email, role="homeowner", password=DEFAULT_PASSWORD, name=None):
        user = runtime.identity.register(email, password, display_name=name or email.split("@")[0], role=role)
        account = runtime.tenants.create_account(user.display_name, user.id)
        runtime.tenants.seed_default_subscription(account.id, role)
        token = runtime.auth.issue_tokens(user).access_token
        return user, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def admin(make_user):
    return make_user("root@homeops.test", role="super_admin")


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
