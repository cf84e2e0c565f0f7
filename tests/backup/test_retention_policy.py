"""
Pure retention planning over backup metadata.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from inventory_backup.domain.retention import (
    DAILY,
    MONTHLY,
    WEEKLY,
    RetentionCandidate,
    plan_retention,
    subtract_months,
)
from inventory_backup.domain.types import BackupStatus, BackupType, RetentionPolicy
from inventory_kernel.exceptions import InvalidConfigUpdateError

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
DEFAULT_POLICY = RetentionPolicy()


def _candidate(created_at, backup_type=BackupType.AUTOMATIC, status=BackupStatus.COMPLETED, validated=True):
    return RetentionCandidate(
        id=uuid4(),
        type=backup_type,
        status=status,
        created_at=created_at,
        validated=validated,
    )


def _daily_automatic(days: int):
    first = NOW.replace(hour=2, minute=0)
    return [_candidate(first - timedelta(days=i)) for i in range(days)]


class TestFourHundredDays:
    """Nightly automatic backups for 400 days under the default policy."""

    @pytest.fixture
    def history(self):
        automatic = _daily_automatic(400)
        manual = [
            _candidate(NOW - timedelta(days=390), BackupType.MANUAL),
            _candidate(NOW - timedelta(days=200), BackupType.PRE_RESTORE, validated=False),
        ]
        return automatic, manual

    @pytest.fixture
    def plan(self, history):
        automatic, manual = history
        return plan_retention(automatic + manual, DEFAULT_POLICY, NOW)

    def test_everything_inside_thirty_days_is_kept(self, history, plan):
        cutoff = NOW - timedelta(days=30)
        recent = [b.id for b in history[0] if b.created_at >= cutoff]

        assert len(recent) == 30
        assert set(recent) <= set(plan.keep)
        assert all(DAILY in plan.windows_for(i) for i in recent)

    def test_one_per_week_inside_twelve_weeks(self, history, plan):
        cutoff = NOW - timedelta(weeks=12)
        weekly_reps = defaultdict(list)
        for backup in history[0]:
            if backup.created_at >= cutoff and WEEKLY in plan.windows_for(backup.id):
                weekly_reps[backup.created_at.isocalendar()[:2]].append(backup)

        weeks_in_window = {
            b.created_at.isocalendar()[:2] for b in history[0] if b.created_at >= cutoff
        }
        assert set(weekly_reps) == weeks_in_window
        for week, reps in weekly_reps.items():
            assert len(reps) == 1
            newest = max(
                (b for b in history[0] if b.created_at >= cutoff and b.created_at.isocalendar()[:2] == week),
                key=lambda b: b.created_at,
            )
            assert reps[0].id == newest.id

    def test_between_thirty_days_and_twelve_weeks_only_representatives_survive(self, history, plan):
        daily_cutoff = NOW - timedelta(days=30)
        weekly_cutoff = NOW - timedelta(weeks=12)

        kept = [
            b for b in history[0]
            if weekly_cutoff <= b.created_at < daily_cutoff and b.id in plan.keep
        ]
        per_week = defaultdict(int)
        for backup in kept:
            assert set(plan.windows_for(backup.id)) & {WEEKLY, MONTHLY}
            if WEEKLY in plan.windows_for(backup.id):
                per_week[backup.created_at.isocalendar()[:2]] += 1

        assert kept
        assert all(count == 1 for count in per_week.values())

    def test_one_per_month_beyond_twelve_weeks(self, history, plan):
        weekly_cutoff = NOW - timedelta(weeks=12)
        monthly_cutoff = subtract_months(NOW, 12)

        kept = [
            b for b in history[0]
            if monthly_cutoff <= b.created_at < weekly_cutoff and b.id in plan.keep
        ]
        per_month = defaultdict(list)
        for backup in kept:
            assert plan.windows_for(backup.id) == (MONTHLY,)
            per_month[(backup.created_at.year, backup.created_at.month)].append(backup)

        assert all(len(reps) == 1 for reps in per_month.values())
        # Month-end backups represent full months: June 2023 .. February 2024
        assert len(per_month) >= 9
        for (year, month), reps in per_month.items():
            in_month = [
                b for b in history[0]
                if (b.created_at.year, b.created_at.month) == (year, month)
                and b.created_at >= monthly_cutoff
            ]
            assert reps[0].created_at == max(b.created_at for b in in_month)

    def test_everything_older_than_twelve_months_is_pruned(self, history, plan):
        monthly_cutoff = subtract_months(NOW, 12)
        old = [b.id for b in history[0] if b.created_at < monthly_cutoff]

        assert old
        assert set(old) <= set(plan.prune)

    def test_manual_and_pre_restore_are_never_touched(self, history, plan):
        for backup in history[1]:
            assert backup.id not in plan.prune
            assert backup.id not in plan.keep

    def test_plan_partitions_automatic_backups(self, history, plan):
        ids = {b.id for b in history[0]}

        assert set(plan.keep) | set(plan.prune) == ids
        assert not set(plan.keep) & set(plan.prune)


class TestRepresentativeChoice:
    def test_validated_backup_preferred_over_newer_unvalidated(self):
        # Two backups in the same ISO week, older than the daily window
        policy = RetentionPolicy(daily_days=1, weekly_weeks=4, monthly_months=1)
        monday = datetime(2024, 6, 3, 2, 0, tzinfo=timezone.utc)
        validated = _candidate(monday, validated=True)
        newer = _candidate(monday + timedelta(days=2), validated=False)

        plan = plan_retention([validated, newer], policy, NOW)

        assert WEEKLY in plan.windows_for(validated.id)
        assert WEEKLY not in plan.windows_for(newer.id)

    def test_failed_and_corrupted_never_represent_a_period(self):
        policy = RetentionPolicy(daily_days=1, weekly_weeks=4, monthly_months=2)
        old = NOW - timedelta(days=10)
        failed = _candidate(old, status=BackupStatus.FAILED)
        corrupted = _candidate(old - timedelta(hours=1), status=BackupStatus.CORRUPTED)

        plan = plan_retention([failed, corrupted], policy, NOW)

        assert set(plan.prune) == {failed.id, corrupted.id}

    def test_in_progress_is_never_pruned(self):
        stale = _candidate(NOW - timedelta(days=500), status=BackupStatus.IN_PROGRESS)

        plan = plan_retention([stale], DEFAULT_POLICY, NOW)

        assert plan.keep == (stale.id,)
        assert plan.windows_for(stale.id) == ("in_progress",)

    def test_failed_backup_inside_daily_window_is_kept(self):
        failed = _candidate(NOW - timedelta(hours=3), status=BackupStatus.FAILED)

        assert failed.id in plan_retention([failed], DEFAULT_POLICY, NOW).keep


class TestPolicyBounds:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"daily_days": 0},
            {"daily_days": 366},
            {"weekly_weeks": 105},
            {"monthly_months": 121},
            {"monthly_months": 0},
        ],
    )
    def test_out_of_range_is_rejected(self, kwargs):
        with pytest.raises(InvalidConfigUpdateError):
            RetentionPolicy(**kwargs)


class TestSubtractMonths:
    @pytest.mark.parametrize(
        "value, months, expected",
        [
            (datetime(2024, 3, 31), 1, datetime(2024, 2, 29)),
            (datetime(2024, 1, 15), 1, datetime(2023, 12, 15)),
            (datetime(2024, 6, 15), 12, datetime(2023, 6, 15)),
            (datetime(2023, 5, 31), 3, datetime(2023, 2, 28)),
        ],
    )
    def test_clamps_to_month_end(self, value, months, expected):
        assert subtract_months(value, months) == expected
