"""
Schedule evaluation, health metrics, and backup request validation.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from inventory_backup.domain.health import evaluate_health
from inventory_backup.domain.schedule import is_backup_due, next_run_after, scheduled_run_for
from inventory_backup.domain.types import (
    ALLOWED_TRANSITIONS,
    BackupConfigUpdate,
    BackupConfigView,
    BackupFormat,
    BackupOptions,
    BackupRecord,
    BackupStatus,
    BackupType,
    RetentionPolicy,
)
from inventory_kernel.exceptions import InvalidBackupRequestError, InvalidConfigUpdateError

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def _record(created_at, status=BackupStatus.COMPLETED, backup_type=BackupType.AUTOMATIC, validated=True):
    return BackupRecord(
        id=uuid4(),
        filename=f"backup-{created_at:%Y%m%d%H%M%S}.json",
        type=backup_type,
        format=BackupFormat.JSON,
        status=status,
        file_size=100,
        plaintext_size=100,
        record_count=1,
        created_at=created_at,
        created_by="system",
        include_audit_logs=True,
        include_user_data=True,
        include_settings=True,
        date_range_from=None,
        date_range_to=None,
        encrypted=False,
        checksum="0" * 64,
        validated=validated,
        validated_at=None,
        notes=None,
        error_message=None,
    )


def _config(enabled=True, schedule_time="02:00"):
    return BackupConfigView(
        enabled=enabled,
        schedule_time=schedule_time,
        formats=(BackupFormat.JSON,),
        include_audit_logs=True,
        retention=RetentionPolicy(),
        storage_path="/var/backups",
        last_run_at=None,
        updated_at=None,
        updated_by=None,
    )


class TestSchedule:
    def test_run_today_once_time_has_passed(self):
        assert scheduled_run_for("02:00", NOW) == NOW.replace(hour=2, minute=0)

    def test_run_yesterday_before_time(self):
        early = NOW.replace(hour=1, minute=30)

        assert scheduled_run_for("02:00", early) == datetime(2024, 6, 14, 2, 0, tzinfo=timezone.utc)

    def test_next_run(self):
        assert next_run_after("23:45", NOW) == datetime(2024, 6, 15, 23, 45, tzinfo=timezone.utc)

    def test_due_without_history(self):
        assert is_backup_due("02:00", NOW, None)

    def test_not_due_after_todays_run(self):
        assert not is_backup_due("02:00", NOW, NOW.replace(hour=2, minute=3))

    def test_due_when_last_run_was_yesterday(self):
        assert is_backup_due("02:00", NOW, NOW - timedelta(days=1))

    @pytest.mark.parametrize("value", ["2:00", "24:00", "12:60", "noon", ""])
    def test_malformed_schedule_time(self, value):
        with pytest.raises(InvalidConfigUpdateError):
            scheduled_run_for(value, NOW)


class TestHealth:
    def test_healthy_history(self):
        backups = [_record(NOW - timedelta(days=i, hours=10)) for i in range(5)]

        health = evaluate_health(backups, _config(), 1_000, 10_000, NOW)

        assert health.healthy
        assert health.success_streak == 5
        assert health.last_backup_at == NOW - timedelta(hours=10)
        assert health.next_scheduled_at == datetime(2024, 6, 16, 2, 0, tzinfo=timezone.utc)

    def test_failure_breaks_streak_and_alerts(self):
        backups = [
            _record(NOW - timedelta(hours=10)),
            _record(NOW - timedelta(days=1, hours=10), status=BackupStatus.FAILED),
            _record(NOW - timedelta(days=2, hours=10)),
        ]

        health = evaluate_health(backups, _config(), 0, None, NOW)

        assert health.success_streak == 1
        assert health.failures_last_30_days == 1
        assert any("failed" in alert for alert in health.alerts)

    def test_pre_restore_and_in_progress_do_not_affect_streak(self):
        backups = [
            _record(NOW - timedelta(hours=1), status=BackupStatus.IN_PROGRESS),
            _record(NOW - timedelta(hours=2), backup_type=BackupType.PRE_RESTORE),
            _record(NOW - timedelta(hours=3)),
            _record(NOW - timedelta(hours=4), status=BackupStatus.FAILED),
        ]

        assert evaluate_health(backups, _config(), 0, None, NOW).success_streak == 1

    def test_stale_backups_alert(self):
        health = evaluate_health([_record(NOW - timedelta(days=3))], _config(), 0, None, NOW)

        assert "no successful backup in the last 48 hours" in health.alerts

    def test_no_backups(self):
        health = evaluate_health([], None, 0, None, NOW)

        assert health.last_backup_at is None
        assert health.next_scheduled_at is None
        assert "no successful backup on record" in health.alerts

    def test_storage_and_corruption_and_disabled_alerts(self):
        backups = [
            _record(NOW - timedelta(hours=1)),
            _record(NOW - timedelta(hours=2), status=BackupStatus.CORRUPTED),
            _record(NOW - timedelta(hours=3), validated=False),
        ]

        health = evaluate_health(backups, _config(enabled=False), 900, 1_000, NOW)

        assert health.corrupted_count == 1
        assert health.unvalidated_count == 1
        assert health.next_scheduled_at is None
        assert "backup storage at 90% of quota" in health.alerts
        assert "automatic backups are disabled" in health.alerts
        assert not health.healthy


class TestBackupOptions:
    def test_defaults(self):
        options = BackupOptions()

        assert options.format is BackupFormat.JSON
        assert options.type is BackupType.MANUAL
        assert not options.encrypt

    def test_strings_are_coerced(self):
        options = BackupOptions(format="CSV", type="AUTOMATIC")

        assert options.format is BackupFormat.CSV
        assert options.type is BackupType.AUTOMATIC

    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"passphrase": "long enough"}, "encrypt"),
            ({"encrypt": True, "passphrase": "short"}, "8 characters"),
            ({"date_from": NOW, "date_to": NOW - timedelta(days=1)}, "date_from"),
            ({"notes": "x" * 1001}, "1000"),
        ],
    )
    def test_invalid_requests(self, kwargs, message):
        with pytest.raises(InvalidBackupRequestError, match=message):
            BackupOptions(**kwargs)

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            BackupOptions(format="XML")


class TestConfigUpdate:
    def test_formats_are_deduplicated(self):
        update = BackupConfigUpdate(formats=("JSON", "CSV", "JSON"))

        assert update.formats == (BackupFormat.JSON, BackupFormat.CSV)

    def test_changes_skip_unset_fields(self):
        assert BackupConfigUpdate(enabled=False).changes() == {"enabled": False}

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"schedule_time": "7am"}, "schedule_time"),
            ({"formats": ()}, "formats"),
            ({"formats": ("XML",)}, "formats"),
            ({"storage_path": "  "}, "storage_path"),
        ],
    )
    def test_invalid_updates(self, kwargs, field):
        with pytest.raises(InvalidConfigUpdateError) as exc_info:
            BackupConfigUpdate(**kwargs)

        assert exc_info.value.field == field


class TestTransitions:
    def test_terminal_states(self):
        assert ALLOWED_TRANSITIONS[BackupStatus.FAILED] == frozenset()
        assert ALLOWED_TRANSITIONS[BackupStatus.CORRUPTED] == frozenset()

    def test_completed_can_only_become_corrupted(self):
        assert ALLOWED_TRANSITIONS[BackupStatus.COMPLETED] == {BackupStatus.CORRUPTED}
