"""Tests for the in-memory credential store and its JSON snapshot."""

from datetime import timedelta

import pytest

from docvault.storage.errors import ConstraintViolation
from docvault.storage.memory import MemoryStore
from docvault.storage.models import LoginHistoryEntry, LoginStatus, RefreshCredential, utcnow


@pytest.fixture
def store():
    store = MemoryStore()
    store.create_tenant("Acme", tenant_id="acme")
    return store


def _cred(store, user, **kwargs):
    return RefreshCredential.new(
        kwargs.pop("token_hash", "h" * 64),
        user_id=user.id,
        tenant_id=user.tenant_id,
        ttl_minutes=60,
        **kwargs,
    )


class TestUsers:
    def test_email_is_unique_per_tenant(self, store):
        store.create_user("A@Acme.test", tenant_id="acme")

        with pytest.raises(ConstraintViolation):
            store.create_user("a@acme.test ", tenant_id="acme")

    def test_unknown_tenant_is_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_user("a@x.test", tenant_id="missing")


class TestRotation:
    def test_rotate_links_successor(self, store):
        user = store.create_user("a@acme.test", tenant_id="acme")
        current = store.create_refresh_credential(_cred(store, user, token_hash="1" * 64))
        successor = _cred(store, user, token_hash="2" * 64, family_id=current.family_id)

        assert store.rotate_refresh_credential(current.id, successor) is True

        assert store.get_refresh_credential(current.id).state == "rotated"
        assert store.get_refresh_credential(current.id).replaced_by == successor.id
        assert store.get_refresh_credential_by_hash("2" * 64).state == "active"

    def test_second_rotation_loses(self, store):
        user = store.create_user("a@acme.test", tenant_id="acme")
        current = store.create_refresh_credential(_cred(store, user, token_hash="1" * 64))
        first = _cred(store, user, token_hash="2" * 64, family_id=current.family_id)
        second = _cred(store, user, token_hash="3" * 64, family_id=current.family_id)

        assert store.rotate_refresh_credential(current.id, first) is True
        assert store.rotate_refresh_credential(current.id, second) is False
        assert store.get_refresh_credential_by_hash("3" * 64) is None

    def test_expired_record_cannot_rotate(self, store):
        user = store.create_user("a@acme.test", tenant_id="acme")
        current = _cred(store, user, token_hash="1" * 64)
        current.expires_at = utcnow() - timedelta(seconds=1)
        store.create_refresh_credential(current)

        assert store.rotate_refresh_credential(current.id, _cred(store, user)) is False

    def test_revoke_family_and_user(self, store):
        user = store.create_user("a@acme.test", tenant_id="acme")
        keep = store.create_refresh_credential(_cred(store, user, token_hash="1" * 64))
        drop = store.create_refresh_credential(_cred(store, user, token_hash="2" * 64))

        assert store.revoke_user_refresh_credentials(user.id, keep.family_id) == 1
        assert store.get_refresh_credential(drop.id).state == "revoked"
        assert store.revoke_refresh_family(keep.family_id) == 1
        assert store.revoke_refresh_family(keep.family_id) == 0


class TestSnapshot:
    def test_state_survives_restart(self, tmp_path):
        path = tmp_path / "state" / "memory_store.json"
        store = MemoryStore(state_path=str(path))
        store.create_tenant("Acme", tenant_id="acme")
        user = store.create_user("a@acme.test", tenant_id="acme")
        store.save_password(user.id, "hash", "argon2id")
        cred = store.create_refresh_credential(_cred(store, user))
        store.revoke_refresh_credential(cred.id)
        store.record_login_attempt(
            LoginHistoryEntry.new(LoginStatus.SUCCESS, user.email, tenant_id="acme", user_id=user.id)
        )

        reloaded = MemoryStore(state_path=str(path))

        assert reloaded.get_user(user.id).email == "a@acme.test"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_refresh_credential_by_hash("h" * 64).state == "revoked"
        items, total = reloaded.list_login_history(tenant_id="acme")
        assert total == 1
        assert items[0].status == LoginStatus.SUCCESS
