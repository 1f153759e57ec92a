import importlib.util
from pathlib import Path

import pytest

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_admin_with_main_account(runtime, bootstrap):
    result = bootstrap(runtime, "ops@x.io", "hunter2hunter2")
    assert result["status"] == "created"
    user = runtime.identity.by_email("ops@x.io")
    assert user.role == "super_admin"
    account = runtime.tenants.get_account(result["account_id"])
    assert account.name == "main" and account.owner_user_id == user.id


def test_is_idempotent(runtime, bootstrap):
    first = bootstrap(runtime, "ops@x.io", "hunter2hunter2")
    second = bootstrap(runtime, "ops@x.io", "hunter2hunter2")
    assert second["status"] == "already_admin"
    assert second["account_id"] == first["account_id"]


def test_promotes_existing_user(runtime, bootstrap, make_user):
    make_user("ops@x.io")
    result = bootstrap(runtime, "ops@x.io", None, role="admin")
    assert result["status"] == "promoted"
    assert runtime.identity.by_email("ops@x.io").role == "admin"


def test_dry_run_writes_nothing(runtime, bootstrap):
    result = bootstrap(runtime, "ops@x.io", "hunter2hunter2", dry_run=True)
    assert result["status"] == "dry_run"
    assert runtime.identity.by_email("ops@x.io") is None
