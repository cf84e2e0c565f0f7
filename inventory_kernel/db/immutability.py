"""
ORM-level immutability and lifecycle enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Audit entries are evidence.  Once written, the application must never edit
or delete one; a correction is a new entry (REVERT) that leaves a visible
trail.  Backup status is a one-way state machine: a corrupted backup must
never be relabelled COMPLETED and restored from.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here check those rules and raise before
any SQL is sent:

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError /
         |                             InvalidStatusTransitionError
         v
    [before_delete] --> _check_audit_entry_delete()
         |
         v
    SQL sent to database (only if checks pass)

Raw SQL bypasses these listeners; that is exactly the tampering the chain
verifier and the checksum validator exist to detect.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity       | Rule
-------------|-------------------------------------------------------------
AuditEntry   | ALWAYS immutable; never deleted
Backup       | status follows ALLOWED_TRANSITIONS; CORRUPTED/FAILED terminal

Inline imports avoid a cycle between db/ and the model modules.
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from inventory_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidStatusTransitionError,
)
from inventory_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_audit_entry_immutability(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries are append-only and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries cannot be deleted",
    )


def _check_backup_status_transition(mapper, connection, target):
    """
    Enforce the backup lifecycle on every status change.

    IN_PROGRESS -> COMPLETED | FAILED, COMPLETED -> CORRUPTED.  Nothing
    leaves FAILED or CORRUPTED.
    """
    from inventory_backup.domain.types import ALLOWED_TRANSITIONS, BackupStatus

    history = get_history(target, "status")
    if not history.deleted:
        return

    old_status = BackupStatus(history.deleted[0])
    new_status = BackupStatus(target.status)
    if old_status == new_status:
        return
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, frozenset()):
        logger.error(
            "invalid_status_transition_blocked",
            extra={
                "backup_id": str(target.id),
                "from_status": old_status.value,
                "to_status": new_status.value,
            },
        )
        raise InvalidStatusTransitionError(
            backup_id=str(target.id),
            from_status=old_status.value,
            to_status=new_status.value,
        )


def _listeners():
    from inventory_backup.models.backup import Backup
    from inventory_kernel.models.audit_entry import AuditEntry

    return (
        (AuditEntry, "before_update", _check_audit_entry_immutability),
        (AuditEntry, "before_delete", _check_audit_entry_delete),
        (Backup, "before_update", _check_backup_status_transition),
    )


def register_immutability_listeners() -> None:
    """
    Register all enforcement listeners.  Safe to call more than once.

    Called by bootstrap after all models are imported and before any
    database operations begin.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)
