"""
Pure backup health evaluation.

``evaluate_health`` turns backup metadata, the schedule, and storage usage
into the metrics and alerts shown to operators.  ZERO I/O.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from inventory_kernel.domain.clock import as_utc

from inventory_backup.domain.schedule import next_run_after
from inventory_backup.domain.types import (
    BackupConfigView,
    BackupHealth,
    BackupRecord,
    BackupStatus,
    BackupType,
)

STALE_AFTER = timedelta(hours=48)
FAILURE_LOOKBACK = timedelta(days=30)
STORAGE_WARNING_RATIO = 0.8


def evaluate_health(
    backups: Sequence[BackupRecord],
    config: BackupConfigView | None,
    storage_used_bytes: int,
    storage_limit_bytes: int | None,
    now: datetime,
) -> BackupHealth:
    now = as_utc(now)
    newest_first = sorted(backups, key=lambda b: as_utc(b.created_at), reverse=True)
    regular = [b for b in newest_first if b.type != BackupType.PRE_RESTORE]

    completed = [b for b in regular if b.status == BackupStatus.COMPLETED]
    last_backup_at = as_utc(completed[0].created_at) if completed else None

    streak = 0
    for backup in regular:
        if backup.status == BackupStatus.IN_PROGRESS:
            continue
        if backup.status != BackupStatus.COMPLETED:
            break
        streak += 1

    failures = sum(
        1
        for b in newest_first
        if b.status == BackupStatus.FAILED and as_utc(b.created_at) >= now - FAILURE_LOOKBACK
    )
    corrupted = sum(1 for b in newest_first if b.status == BackupStatus.CORRUPTED)
    unvalidated = sum(
        1 for b in newest_first if b.status == BackupStatus.COMPLETED and not b.validated
    )

    next_run = None
    if config is not None and config.enabled:
        next_run = next_run_after(config.schedule_time, now)

    alerts: list[str] = []
    if last_backup_at is None:
        alerts.append("no successful backup on record")
    elif now - last_backup_at > STALE_AFTER:
        alerts.append("no successful backup in the last 48 hours")
    if failures:
        alerts.append(f"{failures} backup(s) failed in the last 30 days")
    if corrupted:
        alerts.append(f"{corrupted} corrupted backup(s) retained for review")
    if storage_limit_bytes and storage_used_bytes >= storage_limit_bytes * STORAGE_WARNING_RATIO:
        alerts.append(
            f"backup storage at {storage_used_bytes * 100 // storage_limit_bytes}% of quota"
        )
    if config is not None and not config.enabled:
        alerts.append("automatic backups are disabled")

    return BackupHealth(
        last_backup_at=last_backup_at,
        next_scheduled_at=next_run,
        success_streak=streak,
        failures_last_30_days=failures,
        corrupted_count=corrupted,
        unvalidated_count=unvalidated,
        storage_used_bytes=storage_used_bytes,
        storage_limit_bytes=storage_limit_bytes,
        alerts=tuple(alerts),
    )
