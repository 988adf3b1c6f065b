"""Tests for MemoryStore constraints, detachment and JSON persistence."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from accessflow.storage.errors import ConstraintViolation
from accessflow.storage.memory import MemoryStore
from accessflow.storage.models import MfaMethod, Role, UserStatus


def _expiry():
    return datetime.now(timezone.utc) + timedelta(hours=24)


class TestUsers:
    def test_duplicate_email_violates_constraint(self, store):
        store.create_user("a@example.com", "A", "hash")
        with pytest.raises(ConstraintViolation):
            store.create_user("a@example.com", "Again", "hash")

    def test_returned_entities_are_detached(self, store):
        user = store.create_user("a@example.com", "A", "hash")
        user.name = "Changed"
        assert store.get_user(user.id).name == "A"

        user.role = Role.SITE_ADMIN
        store.save_user(user)
        assert store.get_user(user.id).role is Role.SITE_ADMIN

    def test_save_unknown_user_rejected(self, store):
        user = store.create_user("a@example.com", "A", "hash")
        other = MemoryStore(persist=False)
        with pytest.raises(ConstraintViolation):
            other.save_user(user)

    def test_save_cannot_steal_email(self, store):
        store.create_user("a@example.com", "A", "hash")
        bob = store.create_user("b@example.com", "B", "hash")
        bob.email = "a@example.com"
        with pytest.raises(ConstraintViolation):
            store.save_user(bob)

    def test_lookup_by_reset_token(self, store):
        user = store.create_user("a@example.com", "A", "hash")
        user.reset_token = "tok"
        store.save_user(user)
        assert store.get_user_by_reset_token("tok").id == user.id
        assert store.get_user_by_reset_token("") is None

    def test_list_users_respects_limit(self, store):
        for idx in range(5):
            store.create_user(f"u{idx}@example.com", "U", "hash")
        assert len(store.list_users(limit=3)) == 3


class TestOrganizations:
    def test_get_or_create_is_idempotent(self, store):
        org, created = store.get_or_create_organization("Acme", created_by="op-1")
        again, created_again = store.get_or_create_organization("Acme", created_by="op-2")
        assert created and not created_again
        assert again.id == org.id
        assert again.created_by == "op-1"

    def test_concurrent_get_or_create_yields_one_organization(self, store):
        results = []

        def worker():
            results.append(store.get_or_create_organization("Acme"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({org.id for org, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1
        assert len(store.organizations) == 1

    def test_lookup_by_admin(self, store):
        org, _ = store.get_or_create_organization("Acme")
        org.client_admin_id = "admin-1"
        store.save_organization(org)
        assert store.get_organization_by_admin("admin-1").id == org.id
        assert store.get_organization_by_admin("someone-else") is None

    def test_empty_name_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.get_or_create_organization("")


class TestInvitations:
    def test_pending_lookup_requires_exact_match(self, store):
        invite = store.create_invite("a@example.com", Role.OPERATOR, "root", "tok", _expiry())
        assert store.find_pending_invite("a@example.com", "tok").id == invite.id
        assert store.find_pending_invite("a@example.com", "other") is None
        assert store.find_pending_invite("b@example.com", "tok") is None

    def test_accepted_invite_no_longer_pending(self, store):
        invite = store.create_invite("a@example.com", Role.OPERATOR, "root", "tok", _expiry())
        invite.accepted = True
        store.save_invite(invite)
        assert store.find_pending_invite("a@example.com", "tok") is None

    def test_open_invite_for_organization(self, store):
        now = datetime.now(timezone.utc)
        invite = store.create_invite(
            "a@acme.test", Role.CLIENT_ADMIN, "ops", "tok", _expiry(), organization_id="org-1"
        )
        assert store.find_open_invite_for_organization("org-1", Role.CLIENT_ADMIN, now).id == invite.id
        assert store.find_open_invite_for_organization("org-1", Role.CLIENT_USER, now) is None
        assert store.find_open_invite_for_organization("org-2", Role.CLIENT_ADMIN, now) is None
        later = invite.expires_at + timedelta(seconds=1)
        assert store.find_open_invite_for_organization("org-1", Role.CLIENT_ADMIN, later) is None

        invite.accepted = True
        store.save_invite(invite)
        assert store.find_open_invite_for_organization("org-1", Role.CLIENT_ADMIN, now) is None


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        user = first.create_user(
            "a@example.com", "A", "hash", role=Role.CLIENT_ADMIN, status=UserStatus.ACTIVE
        )
        user.mfa.method = MfaMethod.TOTP
        user.mfa.secret = "JBSWY3DPEHPK3PXP"
        first.save_user(user)
        org, _ = first.get_or_create_organization("Acme", created_by=user.id)
        first.create_invite(
            "b@example.com", Role.CLIENT_USER, user.id, "tok", _expiry(), organization_id=org.id
        )

        second = MemoryStore(fs_root=str(tmp_path))
        restored = second.get_user_by_email("a@example.com")
        assert restored.role is Role.CLIENT_ADMIN
        assert restored.mfa.method is MfaMethod.TOTP
        assert restored.mfa.secret == "JBSWY3DPEHPK3PXP"
        assert second.get_organization_by_name("Acme").created_by == user.id
        assert second.find_pending_invite("b@example.com", "tok").organization_id == org.id

    def test_secret_not_written_in_plaintext(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("a@example.com", "A", "hash")
        user.mfa.secret = "JBSWY3DPEHPK3PXP"
        store.save_user(user)
        raw = (tmp_path / "state" / "memory_store.json").read_text()
        assert "JBSWY3DPEHPK3PXP" not in raw

    def test_persistence_can_be_disabled(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), persist=False)
        store.create_user("a@example.com", "A", "hash")
        assert not (tmp_path / "state" / "memory_store.json").exists()
