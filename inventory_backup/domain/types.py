"""
inventory_backup.domain.types -- Pure frozen dataclasses for the backup system.

ZERO I/O.  Enum status fields, tuples for immutable collections, and
``from_model`` converters that are only called from the service layer.

Invariants enforced:
    - Status lifecycle: IN_PROGRESS -> {COMPLETED, FAILED};
      COMPLETED -> CORRUPTED (validator only).  FAILED and CORRUPTED are
      terminal.  ALLOWED_TRANSITIONS is the single source of truth, used by
      the lifecycle manager and the ORM listener.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from inventory_kernel.exceptions import (
    InvalidBackupRequestError,
    InvalidConfigUpdateError,
)

if TYPE_CHECKING:
    from inventory_backup.models.backup import Backup, BackupConfig


# =============================================================================
# Enums
# =============================================================================


class BackupType(str, Enum):
    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"
    PRE_RESTORE = "PRE_RESTORE"


class BackupFormat(str, Enum):
    CSV = "CSV"
    JSON = "JSON"
    SQL = "SQL"

    @property
    def extension(self) -> str:
        return self.value.lower()

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self]


_CONTENT_TYPES = {
    BackupFormat.CSV: "text/csv",
    BackupFormat.JSON: "application/json",
    BackupFormat.SQL: "application/sql",
}

ENCRYPTED_CONTENT_TYPE = "application/octet-stream"


class BackupStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CORRUPTED = "CORRUPTED"


ALLOWED_TRANSITIONS: dict[BackupStatus, frozenset[BackupStatus]] = {
    BackupStatus.IN_PROGRESS: frozenset({BackupStatus.COMPLETED, BackupStatus.FAILED}),
    BackupStatus.COMPLETED: frozenset({BackupStatus.CORRUPTED}),
    BackupStatus.FAILED: frozenset(),
    BackupStatus.CORRUPTED: frozenset(),
}


class RestoreMode(str, Enum):
    FULL = "full"  # Replace inventory and settings with the artifact's
    MERGE = "merge"  # Upsert artifact rows, keep rows it does not mention
    PREVIEW = "preview"  # Count only, no mutation


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class BackupOptions:
    """What to put in a backup and how to store it."""

    format: BackupFormat = BackupFormat.JSON
    type: BackupType = BackupType.MANUAL
    include_audit_logs: bool = True
    include_user_data: bool = True
    include_settings: bool = True
    date_from: datetime | None = None
    date_to: datetime | None = None
    encrypt: bool = False
    passphrase: str | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "format", BackupFormat(self.format))
        object.__setattr__(self, "type", BackupType(self.type))
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise InvalidBackupRequestError("date_from is after date_to")
        if self.passphrase is not None and not self.encrypt:
            raise InvalidBackupRequestError("a passphrase requires encrypt=True")
        if self.passphrase is not None and len(self.passphrase) < 8:
            raise InvalidBackupRequestError("passphrase must be at least 8 characters")
        if self.notes is not None and len(self.notes) > 1000:
            raise InvalidBackupRequestError("notes must be at most 1000 characters")


@dataclass(frozen=True)
class RestoreOptions:
    mode: RestoreMode = RestoreMode.FULL
    passphrase: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", RestoreMode(self.mode))


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class BackupRecord:
    """Read-side view of one backup row."""

    id: UUID
    filename: str
    type: BackupType
    format: BackupFormat
    status: BackupStatus
    file_size: int
    plaintext_size: int
    record_count: int
    created_at: datetime
    created_by: str
    include_audit_logs: bool
    include_user_data: bool
    include_settings: bool
    date_range_from: datetime | None
    date_range_to: datetime | None
    encrypted: bool
    checksum: str | None
    validated: bool
    validated_at: datetime | None
    notes: str | None
    error_message: str | None

    @classmethod
    def from_model(cls, backup: Backup) -> BackupRecord:
        return cls(
            id=backup.id,
            filename=backup.filename,
            type=BackupType(backup.type),
            format=BackupFormat(backup.format),
            status=BackupStatus(backup.status),
            file_size=backup.file_size,
            plaintext_size=backup.plaintext_size,
            record_count=backup.record_count,
            created_at=backup.created_at,
            created_by=backup.created_by,
            include_audit_logs=backup.include_audit_logs,
            include_user_data=backup.include_user_data,
            include_settings=backup.include_settings,
            date_range_from=backup.date_range_from,
            date_range_to=backup.date_range_to,
            encrypted=backup.encrypted,
            checksum=backup.checksum,
            validated=backup.validated,
            validated_at=backup.validated_at,
            notes=backup.notes,
            error_message=backup.error_message,
        )

    @property
    def content_type(self) -> str:
        return ENCRYPTED_CONTENT_TYPE if self.encrypted else self.format.content_type


@dataclass(frozen=True)
class ValidationReport:
    backup_id: UUID
    valid: bool
    status: BackupStatus
    expected_checksum: str | None = None
    actual_checksum: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class RestoreSummary:
    backup_id: UUID
    mode: RestoreMode
    pre_restore_backup_id: UUID | None
    inventory_items: int = 0
    settings: int = 0
    removed_inventory_items: int = 0
    removed_settings: int = 0
    skipped: tuple[str, ...] = ()

    @property
    def applied(self) -> bool:
        return self.mode is not RestoreMode.PREVIEW


@dataclass(frozen=True)
class BackupDownload:
    data: bytes
    content_type: str
    filename: str


@dataclass(frozen=True)
class BackupHealth:
    last_backup_at: datetime | None
    next_scheduled_at: datetime | None
    success_streak: int
    failures_last_30_days: int
    corrupted_count: int
    unvalidated_count: int
    storage_used_bytes: int
    storage_limit_bytes: int | None
    alerts: tuple[str, ...] = ()

    @property
    def healthy(self) -> bool:
        return not self.alerts


# =============================================================================
# Configuration
# =============================================================================


_SCHEDULE_TIME = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class RetentionPolicy:
    daily_days: int = 30
    weekly_weeks: int = 12
    monthly_months: int = 12

    def __post_init__(self) -> None:
        for name, value, upper in (
            ("retention_daily_days", self.daily_days, 365),
            ("retention_weekly_weeks", self.weekly_weeks, 104),
            ("retention_monthly_months", self.monthly_months, 120),
        ):
            if not 1 <= value <= upper:
                raise InvalidConfigUpdateError(name, f"must be between 1 and {upper}")


@dataclass(frozen=True)
class BackupConfigView:
    enabled: bool
    schedule_time: str
    formats: tuple[BackupFormat, ...]
    include_audit_logs: bool
    retention: RetentionPolicy
    storage_path: str
    last_run_at: datetime | None
    updated_at: datetime | None
    updated_by: str | None

    @classmethod
    def from_model(cls, config: BackupConfig) -> BackupConfigView:
        return cls(
            enabled=config.enabled,
            schedule_time=config.schedule_time,
            formats=tuple(BackupFormat(f) for f in config.formats or ()),
            include_audit_logs=config.include_audit_logs,
            retention=RetentionPolicy(
                daily_days=config.retention_daily_days,
                weekly_weeks=config.retention_weekly_weeks,
                monthly_months=config.retention_monthly_months,
            ),
            storage_path=config.storage_path,
            last_run_at=config.last_run_at,
            updated_at=config.updated_at,
            updated_by=config.updated_by,
        )


@dataclass(frozen=True)
class BackupConfigUpdate:
    """Partial update; None leaves a field unchanged."""

    enabled: bool | None = None
    schedule_time: str | None = None
    formats: tuple[BackupFormat, ...] | None = None
    include_audit_logs: bool | None = None
    retention_daily_days: int | None = None
    retention_weekly_weeks: int | None = None
    retention_monthly_months: int | None = None
    storage_path: str | None = None

    def __post_init__(self) -> None:
        if self.schedule_time is not None and not _SCHEDULE_TIME.match(self.schedule_time):
            raise InvalidConfigUpdateError("schedule_time", "must be HH:MM (24-hour)")
        if self.formats is not None:
            try:
                formats = tuple(dict.fromkeys(BackupFormat(f) for f in self.formats))
            except ValueError as exc:
                raise InvalidConfigUpdateError("formats", str(exc)) from exc
            if not formats:
                raise InvalidConfigUpdateError("formats", "at least one format is required")
            object.__setattr__(self, "formats", formats)
        if self.storage_path is not None and not self.storage_path.strip():
            raise InvalidConfigUpdateError("storage_path", "must not be empty")

    def changes(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in self.__dict__.items()
            if value is not None
        }


def parse_schedule_time(value: str) -> tuple[int, int]:
    match = _SCHEDULE_TIME.match(value)
    if not match:
        raise InvalidConfigUpdateError("schedule_time", "must be HH:MM (24-hour)")
    return int(match.group(1)), int(match.group(2))
