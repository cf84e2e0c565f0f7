"""
Audit values and DTOs.

Responsibility:
    Defines the action and entity vocabularies of the audit trail, the
    criticality policy that decides whether an audit write failure must fail
    the triggering operation, and the immutable DTOs returned by the
    verifier and the query selector.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``from_model`` converters are only
    invoked from the selector and service layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from inventory_kernel.exceptions import InvalidAuditQueryError

if TYPE_CHECKING:
    from inventory_kernel.models.audit_entry import AuditEntry


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    EXPORT = "EXPORT"
    VIEW = "VIEW"
    REVERT = "REVERT"
    BACKUP = "BACKUP"
    RESTORE = "RESTORE"


class AuditEntityType(str, Enum):
    INVENTORY_ITEM = "InventoryItem"
    USER = "User"
    REPORT = "Report"
    BACKUP = "Backup"
    SETTINGS = "Settings"
    AUDIT_LOG = "AuditLog"


CRITICAL_ACTIONS = frozenset({
    AuditAction.REVERT,
    AuditAction.BACKUP,
    AuditAction.RESTORE,
    AuditAction.DELETE,
})

# Any write against these is a permission or configuration change.
CRITICAL_ENTITY_TYPES = frozenset({
    AuditEntityType.USER,
    AuditEntityType.SETTINGS,
})

BEST_EFFORT_ACTIONS = frozenset({AuditAction.VIEW})

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def is_critical(action: AuditAction | str, entity_type: AuditEntityType | str) -> bool:
    """
    True when a failed audit write must fail the triggering operation.

    VIEW is always best-effort, even on a critical entity type.
    """
    action = AuditAction(action)
    if action in BEST_EFFORT_ACTIONS:
        return False
    return action in CRITICAL_ACTIONS or AuditEntityType(entity_type) in CRITICAL_ENTITY_TYPES


@dataclass(frozen=True)
class NetworkMeta:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuditFilters:
    """
    Query filters for the audit trail.

    Empty collections mean "no restriction".  ``search`` is a case-insensitive
    substring over the serialized diff, the entity id, and the IP address.
    """

    date_from: datetime | None = None
    date_to: datetime | None = None
    actor_ids: tuple[str, ...] = ()
    actions: tuple[AuditAction, ...] = ()
    entity_types: tuple[AuditEntityType, ...] = ()
    entity_id: str | None = None
    search: str | None = None

    def __post_init__(self) -> None:
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise InvalidAuditQueryError("date_from is after date_to")
        object.__setattr__(self, "actor_ids", tuple(self.actor_ids))
        object.__setattr__(self, "actions", tuple(AuditAction(a) for a in self.actions))
        object.__setattr__(
            self, "entity_types", tuple(AuditEntityType(t) for t in self.entity_types)
        )


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        if self.page < 1:
            raise InvalidAuditQueryError(f"page must be >= 1, got {self.page}")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise InvalidAuditQueryError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {self.page_size}"
            )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class AuditEntryRecord:
    """Read-side view of one audit entry."""

    id: UUID
    seq: int
    occurred_at: datetime
    actor_id: str
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    changes: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    signature: str

    @classmethod
    def from_model(cls, entry: AuditEntry) -> AuditEntryRecord:
        return cls(
            id=entry.id,
            seq=entry.seq,
            occurred_at=entry.occurred_at,
            actor_id=entry.actor_id,
            action=AuditAction(entry.action),
            entity_type=AuditEntityType(entry.entity_type),
            entity_id=entry.entity_id,
            changes=entry.changes,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            signature=entry.signature,
        )

    @property
    def is_critical(self) -> bool:
        return is_critical(self.action, self.entity_type)


@dataclass(frozen=True)
class AuditPage:
    entries: tuple[AuditEntryRecord, ...]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


@dataclass(frozen=True)
class ChainVerification:
    """
    Result of a chain walk.

    ``first_broken_at`` is the ``seq`` of the first entry that failed, or
    None when the checked range is intact.
    """

    valid: bool
    checked: int
    first_broken_at: int | None = None
    reason: str | None = None
    last_seq: int | None = None


@dataclass(frozen=True)
class AuditStatistics:
    total_actions: int
    critical_actions: int
    most_active_actor: str | None
    most_common_action: AuditAction | None
    by_action: dict[str, int] = field(default_factory=dict)
    by_entity_type: dict[str, int] = field(default_factory=dict)
    daily_activity: tuple[tuple[str, int], ...] = ()
    top_actors: tuple[tuple[str, int], ...] = ()


@dataclass(frozen=True)
class AuditEntryDetails:
    entry: AuditEntryRecord
    related: tuple[AuditEntryRecord, ...]
    chain_valid: bool
