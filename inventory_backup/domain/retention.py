"""
Pure retention planning.

Contract:
    ``plan_retention(backups, policy, now)`` is PURE -- no I/O, no clock
    reads, no deletion.  The scheduler and the lifecycle manager apply the
    plan; this module only decides.

Rules:
    - Only AUTOMATIC backups are considered; MANUAL and PRE_RESTORE are
      never pruned, whatever their age.
    - IN_PROGRESS backups are never pruned.
    - Daily window: every backup younger than ``daily_days`` is kept.
    - Weekly window: for each ISO week touching the last ``weekly_weeks``
      weeks, the newest COMPLETED+validated backup inside the window is
      kept (newest COMPLETED when none is validated).
    - Monthly window: the same, per calendar month, over the last
      ``monthly_months`` months.
    - A backup kept by any window is retained; everything else is pruned,
      FAILED and CORRUPTED backups included once they leave the daily window.
"""

from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Hashable, Iterable, Sequence
from uuid import UUID

from inventory_kernel.domain.clock import as_utc

from inventory_backup.domain.types import (
    BackupRecord,
    BackupStatus,
    BackupType,
    RetentionPolicy,
)

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"


@dataclass(frozen=True)
class RetentionCandidate:
    id: UUID
    type: BackupType
    status: BackupStatus
    created_at: datetime
    validated: bool = False

    @classmethod
    def from_record(cls, record: BackupRecord) -> RetentionCandidate:
        return cls(
            id=record.id,
            type=record.type,
            status=record.status,
            created_at=record.created_at,
            validated=record.validated,
        )


@dataclass(frozen=True)
class RetentionPlan:
    keep: tuple[UUID, ...]
    prune: tuple[UUID, ...]
    reasons: dict[UUID, tuple[str, ...]]

    def windows_for(self, backup_id: UUID) -> tuple[str, ...]:
        return self.reasons.get(backup_id, ())


def subtract_months(value: datetime, months: int) -> datetime:
    """Same wall time ``months`` calendar months earlier, day clamped to month end."""
    index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(index, 12)
    day = min(value.day, monthrange(year, month + 1)[1])
    return value.replace(year=year, month=month + 1, day=day)


def _iso_week(value: datetime) -> tuple[int, int]:
    iso = value.isocalendar()
    return iso[0], iso[1]


def _calendar_month(value: datetime) -> tuple[int, int]:
    return value.year, value.month


def _representatives(
    candidates: Iterable[RetentionCandidate],
    period_of: Callable[[datetime], Hashable],
) -> set[UUID]:
    """Newest validated COMPLETED backup per period; newest COMPLETED as fallback."""
    best: dict[Hashable, RetentionCandidate] = {}
    for backup in candidates:
        if backup.status != BackupStatus.COMPLETED:
            continue
        period = period_of(as_utc(backup.created_at))
        current = best.get(period)
        if current is None:
            best[period] = backup
            continue
        rank = (backup.validated, as_utc(backup.created_at))
        if rank > (current.validated, as_utc(current.created_at)):
            best[period] = backup
    return {backup.id for backup in best.values()}


def plan_retention(
    backups: Sequence[RetentionCandidate],
    policy: RetentionPolicy,
    now: datetime,
) -> RetentionPlan:
    now = as_utc(now)
    daily_cutoff = now - timedelta(days=policy.daily_days)
    weekly_cutoff = now - timedelta(weeks=policy.weekly_weeks)
    monthly_cutoff = subtract_months(now, policy.monthly_months)

    automatic = [b for b in backups if BackupType(b.type) == BackupType.AUTOMATIC]

    weekly_keep = _representatives(
        (b for b in automatic if as_utc(b.created_at) >= weekly_cutoff), _iso_week
    )
    monthly_keep = _representatives(
        (b for b in automatic if as_utc(b.created_at) >= monthly_cutoff), _calendar_month
    )

    keep: list[UUID] = []
    prune: list[UUID] = []
    reasons: dict[UUID, tuple[str, ...]] = {}
    for backup in sorted(automatic, key=lambda b: as_utc(b.created_at), reverse=True):
        windows: list[str] = []
        if as_utc(backup.created_at) >= daily_cutoff:
            windows.append(DAILY)
        if backup.id in weekly_keep:
            windows.append(WEEKLY)
        if backup.id in monthly_keep:
            windows.append(MONTHLY)

        if windows or BackupStatus(backup.status) == BackupStatus.IN_PROGRESS:
            keep.append(backup.id)
            reasons[backup.id] = tuple(windows) or ("in_progress",)
        else:
            prune.append(backup.id)

    return RetentionPlan(keep=tuple(keep), prune=tuple(prune), reasons=reasons)
