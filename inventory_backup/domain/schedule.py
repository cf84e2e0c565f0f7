"""
Pure schedule evaluation for automatic backups.

Contract:
    ``scheduled_run_for(schedule_time, now)`` and ``is_backup_due(...)`` are
    PURE -- all timestamps come from the caller.  Schedule times are "HH:MM"
    in UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from inventory_kernel.domain.clock import as_utc

from inventory_backup.domain.types import parse_schedule_time


def scheduled_run_for(schedule_time: str, now: datetime) -> datetime:
    """The most recent scheduled run at or before ``now``."""
    now = as_utc(now)
    hour, minute = parse_schedule_time(schedule_time)
    today = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    return today if today <= now else today - timedelta(days=1)


def next_run_after(schedule_time: str, now: datetime) -> datetime:
    return scheduled_run_for(schedule_time, now) + timedelta(days=1)


def is_backup_due(
    schedule_time: str,
    now: datetime,
    last_automatic_at: datetime | None,
) -> bool:
    """
    True when the latest scheduled run has passed and no automatic backup
    has been taken since it.
    """
    if last_automatic_at is None:
        return True
    return as_utc(last_automatic_at) < scheduled_run_for(schedule_time, now)
