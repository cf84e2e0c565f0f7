"""
Reverting an audited inventory UPDATE.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.audit import AuditAction, AuditEntityType
from inventory_kernel.exceptions import (
    AuditEntryNotFoundError,
    InventoryItemNotFoundError,
    PermissionDeniedError,
    RevertNotAllowedError,
)
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.models.inventory import InventoryItem


@pytest.fixture
def edited_item(seed_inventory, session_factory, record_entry, deterministic_clock):
    """An item whose quantity went 10 -> 4 and batch B-1000 -> B-2000, audited."""
    item_id = seed_inventory(1)[0]
    with session_scope(session_factory) as session:
        item = session.get(InventoryItem, item_id)
        before = {"quantity": item.quantity, "batch": item.batch}
        item.quantity = 4
        item.batch = "B-2000"
        after = {"quantity": item.quantity, "batch": item.batch}
    deterministic_clock.advance(60)
    entry = record_entry(
        actor_id="clerk-1",
        action=AuditAction.UPDATE,
        entity_id=item_id,
        before=before,
        after=after,
    )
    return item_id, entry


def _item(session_factory, item_id) -> InventoryItem:
    with session_factory() as session:
        return session.get(InventoryItem, item_id)


class TestRevert:
    def test_restores_old_values_and_records_revert(
        self, service, admin, edited_item, session_factory
    ):
        item_id, entry = edited_item

        revert = service.revert_change(admin, entry.id)

        item = _item(session_factory, item_id)
        assert item.quantity == 10
        assert item.batch == "B-1000"
        assert revert.action is AuditAction.REVERT
        assert revert.entity_id == str(item_id)
        assert revert.changes["reverted_entry_seq"] == entry.seq
        assert revert.changes["fields"]["quantity"] == {"old": 4, "new": 10}
        assert revert.ip_address == "10.0.0.1"

    def test_original_entry_is_untouched_and_chain_valid(self, service, admin, edited_item, session_factory):
        _, entry = edited_item

        service.revert_change(admin, entry.id)

        with session_factory() as session:
            original = session.get(AuditEntry, entry.id)
            assert original.signature == entry.signature
            assert original.changes == entry.changes
        assert service.verify_audit_chain().valid

    def test_only_admin_may_revert(self, service, auditor, edited_item, session_factory):
        item_id, entry = edited_item

        with pytest.raises(PermissionDeniedError):
            service.revert_change(auditor, entry.id)

        assert _item(session_factory, item_id).quantity == 4

    def test_non_update_entries_cannot_be_reverted(self, service, admin, record_entry):
        created = record_entry(action=AuditAction.CREATE, changes={"quantity": {"old": None, "new": 5}})

        with pytest.raises(RevertNotAllowedError, match="CREATE"):
            service.revert_change(admin, created.id)

    def test_other_entities_cannot_be_reverted(self, service, admin, record_entry):
        entry = record_entry(
            action=AuditAction.UPDATE,
            entity_type=AuditEntityType.USER,
            before={"role": "DATA_ENTRY"},
            after={"role": "ADMIN"},
        )

        with pytest.raises(RevertNotAllowedError):
            service.revert_change(admin, entry.id)

    def test_unknown_entry(self, service, admin):
        with pytest.raises(AuditEntryNotFoundError):
            service.revert_change(admin, uuid4())

    def test_missing_item(self, service, admin, record_entry):
        entry = record_entry(action=AuditAction.UPDATE, before={"quantity": 1}, after={"quantity": 2})

        with pytest.raises(InventoryItemNotFoundError):
            service.revert_change(admin, entry.id)

    def test_entity_id_that_is_not_a_uuid(self, service, admin, record_entry):
        entry = record_entry(
            action=AuditAction.UPDATE,
            entity_id="item-42",
            before={"quantity": 1},
            after={"quantity": 2},
        )

        with pytest.raises(RevertNotAllowedError, match="item-42"):
            service.revert_change(admin, entry.id)

    def test_deleted_item(self, service, admin, edited_item, session_factory, deterministic_clock):
        item_id, entry = edited_item
        with session_scope(session_factory) as session:
            session.get(InventoryItem, item_id).deleted_at = deterministic_clock.now()

        with pytest.raises(RevertNotAllowedError, match="deleted"):
            service.revert_change(admin, entry.id)

    def test_failed_revert_writes_nothing(self, service, admin, record_entry, session_factory):
        entry = record_entry(action=AuditAction.UPDATE, before={"quantity": 1}, after={"quantity": 2})

        with pytest.raises(InventoryItemNotFoundError):
            service.revert_change(admin, entry.id)

        with session_factory() as session:
            actions = session.execute(select(AuditEntry.action)).scalars().all()
        assert AuditAction.REVERT.value not in actions
