import importlib.util
from pathlib import Path

from conftest import PASSWORD
from docvault.storage.models import ApprovalStatus, Role

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_tenant.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("bootstrap_tenant", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def test_bootstrap_creates_signable_tenant_admin(runtime):
    script = _load_script()

    result = await script.bootstrap_tenant(
        "Initech", "root@initech.test", PASSWORD, tenant_id="initech"
    )

    assert result["status"] == "created"
    user = runtime.store.get_user(result["user_id"])
    assert user.role == Role.TENANT_ADMIN
    assert runtime.store.get_tenant("initech").can_sign_in
    assert (await runtime.sessions.login("root@initech.test", PASSWORD)).ok


async def test_bootstrap_is_idempotent(runtime):
    script = _load_script()
    await script.bootstrap_tenant("Initech", "root@initech.test", PASSWORD, tenant_id="initech")

    again = await script.bootstrap_tenant(
        "Initech", "root@initech.test", PASSWORD, tenant_id="initech"
    )

    assert again["status"] == "already_admin"


async def test_bootstrap_approves_pending_tenant(runtime):
    runtime.store.create_tenant(
        "Pending", tenant_id="pending", approval_status=ApprovalStatus.PENDING
    )
    script = _load_script()

    await script.bootstrap_tenant("Pending", "root@pending.test", PASSWORD, tenant_id="pending")

    assert runtime.store.get_tenant("pending").can_sign_in


async def test_dry_run_changes_nothing(runtime):
    script = _load_script()

    result = await script.bootstrap_tenant(
        "Initech", "root@initech.test", PASSWORD, tenant_id="initech", dry_run=True
    )

    assert result["status"] == "dry_run"
    assert runtime.store.get_tenant("initech") is None


def test_password_policy():
    script = _load_script()

    assert script.validate_password(PASSWORD)
    assert not script.validate_password("short1!")
    assert not script.validate_password("alllowercaseletters")
