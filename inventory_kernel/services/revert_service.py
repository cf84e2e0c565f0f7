"""
RevertService -- undo an audited inventory UPDATE.

Responsibility:
    Restores the ``old`` side of a recorded InventoryItem UPDATE diff onto
    the live row and records a critical REVERT entry describing what changed
    back.  The original entry is never touched; the correction is itself a
    new link in the chain.

Architecture position:
    Kernel > Services.  Runs inside the caller's audit_unit_of_work, so the
    inventory change and its REVERT entry commit or roll back together.

Failure modes:
    - PermissionDeniedError: only ADMIN may revert.
    - AuditEntryNotFoundError / InventoryItemNotFoundError.
    - RevertNotAllowedError: wrong action or entity type, empty diff, or a
      soft-deleted item, or an entity id that is not an item UUID.
"""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inventory_kernel.domain.audit import AuditAction, AuditEntityType, NetworkMeta
from inventory_kernel.domain.changes import old_values
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.roles import Actor, Permission, require_permission
from inventory_kernel.exceptions import (
    AuditEntryNotFoundError,
    InventoryItemNotFoundError,
    RevertNotAllowedError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.models.inventory import InventoryItem
from inventory_kernel.services.audit_writer import AuditChainWriter

logger = get_logger("services.revert")

REVERTIBLE_FIELDS = frozenset({
    "item_name",
    "batch",
    "quantity",
    "reject",
    "destination",
    "category",
    "notes",
})


def _snapshot(item: InventoryItem, fields: frozenset[str] | set[str]) -> dict[str, Any]:
    return {name: getattr(item, name) for name in sorted(fields)}


class RevertService:
    def __init__(
        self,
        session: Session,
        writer: AuditChainWriter,
        clock: Clock | None = None,
    ):
        self._session = session
        self._writer = writer
        self._clock = clock or SystemClock()

    def revert(
        self,
        actor: Actor,
        entry_id: UUID,
        network: NetworkMeta | None = None,
    ) -> AuditEntry:
        """
        Apply the pre-change values of ``entry_id`` and record a REVERT.

        Returns:
            The new REVERT audit entry.
        """
        require_permission(actor, Permission.AUDIT_REVERT)

        entry = self._session.get(AuditEntry, entry_id)
        if entry is None:
            raise AuditEntryNotFoundError(str(entry_id))
        if entry.action != AuditAction.UPDATE.value:
            raise RevertNotAllowedError(str(entry_id), f"cannot revert a {entry.action} entry")
        if entry.entity_type != AuditEntityType.INVENTORY_ITEM.value:
            raise RevertNotAllowedError(
                str(entry_id), f"cannot revert changes to {entry.entity_type}"
            )

        restore = {
            key: value
            for key, value in old_values(entry.changes or {}).items()
            if key in REVERTIBLE_FIELDS
        }
        if not restore:
            raise RevertNotAllowedError(str(entry_id), "entry has no revertible fields")

        try:
            item_id = UUID(entry.entity_id)
        except ValueError:
            raise RevertNotAllowedError(
                str(entry_id), f"entity id {entry.entity_id!r} is not an inventory item id"
            ) from None
        item = self._session.get(InventoryItem, item_id)
        if item is None:
            raise InventoryItemNotFoundError(entry.entity_id)
        if item.deleted_at is not None:
            raise RevertNotAllowedError(str(entry_id), "inventory item is deleted")

        before = _snapshot(item, set(restore))
        for key, value in restore.items():
            setattr(item, key, value)
        item.updated_at = self._clock.now()
        self._session.flush()
        after = _snapshot(item, set(restore))

        revert_entry = self._writer.record(
            actor.actor_id,
            AuditAction.REVERT,
            AuditEntityType.INVENTORY_ITEM,
            entry.entity_id,
            changes={
                "reverted_entry_id": str(entry.id),
                "reverted_entry_seq": entry.seq,
                "fields": {
                    key: {"old": before[key], "new": after[key]} for key in sorted(restore)
                },
            },
            network=network or NetworkMeta(actor.ip_address, actor.user_agent),
        )
        logger.info(
            "audit_change_reverted",
            extra={
                "entry_id": str(entry.id),
                "item_id": entry.entity_id,
                "fields": sorted(restore),
            },
        )
        return revert_entry
