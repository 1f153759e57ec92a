"""Unit tests for the in-memory store and the Postgres row mappers.

Tests for:
- Transaction rollback
- Uniqueness constraints
- Backup code consumption
- Cascading deletes
"""

import uuid
from decimal import Decimal

import pytest

from homeops.storage.errors import ConstraintViolation
from homeops.storage.memory import MemoryStore
from homeops.storage.postgres import _row_to_invitation, _row_to_product


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def test_user(memory_store):
    """Create a test user."""
    return memory_store.create_user("test@example.com", password_hash="x")


class TestTransactions:
    def test_exception_restores_every_table(self, memory_store, test_user):
        with pytest.raises(RuntimeError):
            with memory_store.transaction():
                memory_store.create_user("second@example.com")
                memory_store.create_account("Acme", "acme", test_user.id)
                raise RuntimeError("abort")
        assert memory_store.get_user_by_email("second@example.com") is None
        assert memory_store.list_accounts() == []

    def test_inner_failure_only_rolls_back_inner_block(self, memory_store, test_user):
        with memory_store.transaction():
            memory_store.create_account("Outer", "outer", test_user.id)
            with pytest.raises(ConstraintViolation):
                with memory_store.transaction():
                    memory_store.create_account("Inner", "inner", test_user.id)
                    memory_store.create_account("Clash", "outer", test_user.id)
        assert [a.url for a in memory_store.list_accounts()] == ["outer"]


class TestConstraints:
    def test_email_is_unique_case_insensitively(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("TEST@example.com")

    def test_duplicate_account_member(self, memory_store, test_user):
        account = memory_store.create_account("Acme", "acme", test_user.id)
        memory_store.add_account_member(account.id, test_user.id, "owner")
        with pytest.raises(ConstraintViolation):
            memory_store.add_account_member(account.id, test_user.id, "member")

    def test_property_uid_is_unique(self, memory_store, test_user):
        account = memory_store.create_account("Acme", "acme", test_user.id)
        memory_store.create_property(account.id, "01HZZZZZZZZZZZZZZZZZZZZZZA")
        with pytest.raises(ConstraintViolation):
            memory_store.create_property(account.id, "01hzzzzzzzzzzzzzzzzzzzzzza")


class TestBackupCodes:
    def test_consume_is_one_shot(self, memory_store, test_user):
        memory_store.replace_backup_codes(test_user.id, ["h1", "h2"])
        assert memory_store.consume_backup_code(test_user.id, "h1") is True
        assert memory_store.consume_backup_code(test_user.id, "h1") is False
        assert memory_store.count_unused_backup_codes(test_user.id) == 1

    def test_replace_discards_old_codes(self, memory_store, test_user):
        memory_store.replace_backup_codes(test_user.id, ["h1"])
        memory_store.replace_backup_codes(test_user.id, ["h2"])
        assert memory_store.consume_backup_code(test_user.id, "h1") is False


class TestDeletes:
    def test_account_delete_cascades(self, memory_store, test_user):
        account = memory_store.create_account("Acme", "acme", test_user.id)
        memory_store.add_account_member(account.id, test_user.id, "owner")
        prop = memory_store.create_property(account.id, "01HZZZZZZZZZZZZZZZZZZZZZZA")
        memory_store.add_property_member(prop.id, test_user.id, "owner")
        memory_store.create_system(prop.id, "hvac")
        memory_store.create_contact(account.id, name="C", email="c@example.com")

        assert memory_store.delete_account(account.id) is True
        assert memory_store.get_property(prop.id) is None
        assert memory_store.list_systems(prop.id) == []
        assert memory_store.list_contacts() == []
        assert not memory_store.is_user_in_account(test_user.id, account.id)

    def test_user_delete_keeps_usage_history(self, memory_store, test_user):
        other = memory_store.create_user("other@example.com")
        account = memory_store.create_account("Acme", "acme", other.id)
        event = memory_store.log_usage_event(
            account.id,
            user_id=test_user.id,
            category="property_details",
            model="gpt-4o",
            prompt_tokens=1,
            completion_tokens=1,
            total_cost=Decimal("0.01"),
        )
        assert memory_store.delete_user(test_user.id) is True
        remaining = memory_store.list_usage_events(account.id)
        assert [e.id for e in remaining] == [event.id]
        assert remaining[0].user_id is None


class TestRowMappers:
    def test_invitation_id_becomes_string(self):
        from datetime import datetime, timezone

        raw_id = uuid.uuid4()
        now = datetime.now(timezone.utc)
        invitation = _row_to_invitation(
            {
                "id": raw_id,
                "type": "account",
                "inviter_user_id": 1,
                "invitee_email": "a@example.com",
                "account_id": 1,
                "property_id": None,
                "intended_role": "member",
                "token_hash": "h",
                "status": "pending",
                "expires_at": now,
                "accepted_at": None,
                "accepted_by_user_id": None,
                "created_at": now,
            }
        )
        assert invitation.id == str(raw_id)

    def test_product_limits_accept_json_text(self):
        product = _row_to_product(
            {
                "id": 1,
                "name": "basic",
                "target_role": "homeowner",
                "price": Decimal("9.00"),
                "billing_interval": "month",
                "is_active": True,
                "limits": '{"max_properties": 5, "max_viewers": 10}',
            }
        )
        assert product.limits.max_properties == 5
        assert product.limits.max_viewers == 10
