"""
Backup lifecycle: create, validate, restore, delete, download.

Covers the status state machine end to end against a real (SQLite) database
and a real artifact directory.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from inventory_backup.domain.types import (
    BackupFormat,
    BackupOptions,
    BackupStatus,
    BackupType,
    RestoreMode,
    RestoreOptions,
)
from inventory_backup.models.backup import Backup
from inventory_backup.services import lifecycle as lifecycle_module
from inventory_backup.services.validator import compute_checksum
from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.audit import AuditAction, AuditEntityType
from inventory_kernel.exceptions import (
    BackupCorruptedError,
    BackupNotFoundError,
    ChecksumMismatchError,
    DecryptionError,
    IntegrityError,
    InvalidBackupRequestError,
    InvalidStatusTransitionError,
    PermissionDeniedError,
    RestoreTimeoutError,
    RetentionViolationError,
    StorageQuotaExceededError,
)
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.models.inventory import InventoryItem, SystemSetting
from inventory_kernel.services.audit_verifier import AuditChainVerifier


def _backups(session_factory, backup_type=None) -> list[Backup]:
    stmt = select(Backup).order_by(Backup.created_at, Backup.filename)
    if backup_type is not None:
        stmt = stmt.where(Backup.type == backup_type.value)
    with session_factory() as session:
        return list(session.execute(stmt).scalars())


def _audit(session_factory, action: AuditAction) -> list[AuditEntry]:
    with session_factory() as session:
        return list(
            session.execute(
                select(AuditEntry)
                .where(AuditEntry.action == action.value)
                .order_by(AuditEntry.seq)
            ).scalars()
        )


def _quantities(session_factory) -> dict[str, int]:
    with session_factory() as session:
        return {
            item.batch: item.quantity
            for item in session.execute(select(InventoryItem)).scalars()
        }


def _corrupt(storage, filename: str, offset: int = 10) -> None:
    path = storage.path_for(filename)
    data = bytearray(path.read_bytes())
    data[offset] ^= 0xFF
    path.write_bytes(bytes(data))


def _broken_checksum(data):
    raise RuntimeError("digest unavailable")


def _chain_valid(session_factory, signer) -> bool:
    with session_factory() as session:
        return AuditChainVerifier(session, signer).verify_chain().valid


class TestCreate:
    def test_manual_json_backup(self, lifecycle, admin, seed_inventory, storage):
        seed_inventory(10)

        record = lifecycle.create(admin, BackupOptions())

        assert record.status is BackupStatus.COMPLETED
        assert record.type is BackupType.MANUAL
        assert record.record_count == 10
        assert record.filename.endswith("-manual.json")
        assert record.file_size == storage.size(record.filename)
        assert record.checksum == compute_checksum(storage.read(record.filename))
        assert not record.validated
        assert record.created_by == "admin-1"

    def test_row_is_in_progress_before_artifact_is_written(
        self, lifecycle, admin, storage, session_factory, monkeypatch
    ):
        seen = []
        original_write = storage.write

        def _spy(filename, data):
            seen.extend(b.status for b in _backups(session_factory))
            return original_write(filename, data)

        monkeypatch.setattr(storage, "write", _spy)

        lifecycle.create(admin, BackupOptions())

        assert seen == [BackupStatus.IN_PROGRESS.value]

    def test_create_is_audited(self, lifecycle, admin, session_factory, signer):
        record = lifecycle.create(admin, BackupOptions(format=BackupFormat.CSV))

        entries = _audit(session_factory, AuditAction.BACKUP)
        assert len(entries) == 1
        assert entries[0].entity_type == AuditEntityType.BACKUP.value
        assert entries[0].entity_id == str(record.id)
        assert entries[0].changes["outcome"] == "completed"
        assert entries[0].changes["checksum"] == record.checksum
        assert entries[0].ip_address == "10.0.0.1"
        assert _chain_valid(session_factory, signer)

    def test_failure_marks_failed_and_removes_artifact(
        self, lifecycle, admin, seed_inventory, storage, session_factory, monkeypatch
    ):
        seed_inventory(3)
        monkeypatch.setattr(lifecycle_module, "compute_checksum", _broken_checksum)

        with pytest.raises(RuntimeError, match="digest unavailable"):
            lifecycle.create(admin, BackupOptions())

        [backup] = _backups(session_factory)
        assert backup.status == BackupStatus.FAILED.value
        assert "RuntimeError" in backup.error_message
        assert not storage.exists(backup.filename)
        assert list(storage.base_dir.iterdir()) == []
        [entry] = _audit(session_factory, AuditAction.BACKUP)
        assert entry.changes["outcome"] == "failed"
        assert not lifecycle.lock.locked()

    def test_same_instant_gets_distinct_filenames(self, lifecycle, admin):
        first = lifecycle.create(admin, BackupOptions())
        second = lifecycle.create(admin, BackupOptions())

        assert first.filename != second.filename
        assert second.filename.endswith("-manual-2.json")

    def test_encrypted_backup(self, lifecycle, admin, seed_inventory, storage):
        seed_inventory(2)

        record = lifecycle.create(admin, BackupOptions(encrypt=True))

        assert record.encrypted
        assert record.filename.endswith(".json.encrypted")
        assert record.content_type == "application/octet-stream"
        assert b"Saline" not in storage.read(record.filename)

    def test_quota_refuses_new_backups(self, make_lifecycle, admin, storage, session_factory):
        storage.write("filler.bin", b"x" * 96)
        lifecycle = make_lifecycle(max_storage_bytes=100)

        with pytest.raises(StorageQuotaExceededError):
            lifecycle.create(admin, BackupOptions())

        assert _backups(session_factory) == []

    def test_only_admins_manage_backups(self, lifecycle, auditor, manager):
        for actor in (auditor, manager):
            with pytest.raises(PermissionDeniedError):
                lifecycle.create(actor, BackupOptions())


class TestValidate:
    def test_checksum_match_marks_validated(self, lifecycle, admin, seed_inventory, deterministic_clock):
        seed_inventory(2)
        record = lifecycle.create(admin, BackupOptions())
        deterministic_clock.advance(30)

        report = lifecycle.validate(admin, record.id)

        assert report.valid
        stored = lifecycle.get(admin, record.id)
        assert stored.validated
        assert stored.validated_at == deterministic_clock.now()

    def test_revalidation_is_idempotent(self, lifecycle, admin, session_factory):
        record = lifecycle.create(admin, BackupOptions())

        assert lifecycle.validate(admin, record.id).valid
        assert lifecycle.validate(admin, record.id).valid
        assert lifecycle.get(admin, record.id).status is BackupStatus.COMPLETED

    def test_missing_artifact_is_corruption(self, lifecycle, admin, storage):
        record = lifecycle.create(admin, BackupOptions())
        storage.delete(record.filename)

        report = lifecycle.validate(admin, record.id)

        assert not report.valid
        assert report.reason == "artifact missing from storage"
        assert lifecycle.get(admin, record.id).status is BackupStatus.CORRUPTED

    def test_unknown_backup(self, lifecycle, admin):
        with pytest.raises(BackupNotFoundError):
            lifecycle.validate(admin, uuid4())


class TestCorruptionScenario:
    """Ten records, MANUAL/JSON: validate, corrupt one byte, revalidate, restore."""

    def test_corrupted_backup_is_never_restored(
        self, lifecycle, admin, seed_inventory, storage, session_factory, signer
    ):
        seed_inventory(10)
        record = lifecycle.create(admin, BackupOptions(format=BackupFormat.JSON, type=BackupType.MANUAL))
        assert record.record_count == 10

        assert lifecycle.validate(admin, record.id).valid
        assert lifecycle.get(admin, record.id).validated

        _corrupt(storage, record.filename)
        report = lifecycle.validate(admin, record.id)

        assert not report.valid
        assert report.status is BackupStatus.CORRUPTED
        assert report.expected_checksum == record.checksum
        assert report.actual_checksum != record.checksum
        stored = lifecycle.get(admin, record.id)
        assert stored.status is BackupStatus.CORRUPTED
        assert not stored.validated

        with pytest.raises(IntegrityError):
            lifecycle.restore(admin, record.id)

        # Rejected before any snapshot; the artifact is kept for forensics
        assert _backups(session_factory, BackupType.PRE_RESTORE) == []
        assert storage.exists(record.filename)
        [restore_entry] = _audit(session_factory, AuditAction.RESTORE)
        assert restore_entry.changes["outcome"] == "failed"
        assert _chain_valid(session_factory, signer)

    def test_corruption_is_audited_once(self, lifecycle, admin, storage, session_factory):
        record = lifecycle.create(admin, BackupOptions())
        _corrupt(storage, record.filename, offset=0)

        lifecycle.validate(admin, record.id)
        lifecycle.validate(admin, record.id)

        validations = [
            e for e in _audit(session_factory, AuditAction.BACKUP)
            if e.changes.get("operation") == "validate"
        ]
        assert len(validations) == 1
        assert validations[0].changes["outcome"] == "corrupted"

    def test_corrupted_status_is_terminal(self, lifecycle, admin, storage, session_factory):
        record = lifecycle.create(admin, BackupOptions())
        _corrupt(storage, record.filename)
        lifecycle.validate(admin, record.id)

        with session_factory() as session:
            backup = session.get(Backup, record.id)
            backup.status = BackupStatus.COMPLETED.value
            with pytest.raises(InvalidStatusTransitionError):
                session.flush()
            session.rollback()


class TestRestore:
    @pytest.fixture
    def snapshot(self, lifecycle, admin, seed_inventory, seed_setting, deterministic_clock):
        """A validated backup of three items and one setting, then live edits."""
        seed_inventory(3)
        seed_setting()
        record = lifecycle.create(admin, BackupOptions())
        lifecycle.validate(admin, record.id)
        deterministic_clock.advance(3600)
        return record

    @pytest.fixture
    def edited(self, snapshot, session_factory, seed_inventory):
        with session_scope(session_factory) as session:
            item = session.execute(
                select(InventoryItem).where(InventoryItem.batch == "B-1000")
            ).scalar_one()
            item.quantity = 999
            session.execute(select(SystemSetting)).scalar_one().value = 5
        seed_inventory(1, batch="B-NEW")
        return snapshot

    def test_full_restore_replaces_live_data(
        self, lifecycle, admin, edited, session_factory, signer
    ):
        summary = lifecycle.restore(admin, edited.id, RestoreOptions(mode=RestoreMode.FULL))

        assert _quantities(session_factory) == {"B-1000": 10, "B-1001": 20, "B-1002": 30}
        with session_factory() as session:
            assert session.execute(select(SystemSetting)).scalar_one().value == 25
        assert summary.applied
        assert summary.inventory_items == 3
        assert summary.removed_inventory_items == 4
        assert summary.settings == 1
        assert _chain_valid(session_factory, signer)

    def test_exactly_one_pre_restore_backup(self, lifecycle, admin, edited, session_factory, storage):
        summary = lifecycle.restore(admin, edited.id)

        [pre] = _backups(session_factory, BackupType.PRE_RESTORE)
        assert summary.pre_restore_backup_id == pre.id
        assert pre.status == BackupStatus.COMPLETED.value
        assert pre.format == BackupFormat.JSON.value
        # The snapshot holds the live state just before the restore
        assert pre.record_count >= 5
        assert storage.exists(pre.filename)

    def test_restore_is_audited_with_outcome(self, lifecycle, admin, edited, session_factory):
        summary = lifecycle.restore(admin, edited.id)

        [entry] = _audit(session_factory, AuditAction.RESTORE)
        assert entry.entity_id == str(edited.id)
        assert entry.changes["outcome"] == "completed"
        assert entry.changes["mode"] == "full"
        assert entry.changes["pre_restore_backup_id"] == str(summary.pre_restore_backup_id)

    def test_merge_keeps_unmentioned_rows(self, lifecycle, admin, edited, session_factory):
        summary = lifecycle.restore(admin, edited.id, RestoreOptions(mode=RestoreMode.MERGE))

        assert _quantities(session_factory) == {
            "B-1000": 10,
            "B-1001": 20,
            "B-1002": 30,
            "B-NEW": 10,
        }
        assert summary.removed_inventory_items == 0

    def test_preview_changes_nothing(self, lifecycle, admin, edited, session_factory):
        summary = lifecycle.restore(admin, edited.id, RestoreOptions(mode="preview"))

        assert not summary.applied
        assert summary.pre_restore_backup_id is None
        assert summary.inventory_items == 3
        assert summary.removed_inventory_items == 4
        assert _quantities(session_factory)["B-1000"] == 999
        assert _backups(session_factory, BackupType.PRE_RESTORE) == []
        [entry] = _audit(session_factory, AuditAction.RESTORE)
        assert entry.changes["outcome"] == "preview"

    def test_artifact_changed_after_validation_is_not_restored(
        self, lifecycle, admin, edited, storage, session_factory
    ):
        assert lifecycle.get(admin, edited.id).validated
        _corrupt(storage, edited.filename)

        with pytest.raises(BackupCorruptedError):
            lifecycle.restore(admin, edited.id)

        assert _quantities(session_factory)["B-1000"] == 999
        assert lifecycle.get(admin, edited.id).status is BackupStatus.CORRUPTED
        assert _backups(session_factory, BackupType.PRE_RESTORE) == []
        [entry] = _audit(session_factory, AuditAction.RESTORE)
        assert entry.changes["outcome"] == "failed"

    def test_unvalidated_backup_is_validated_first(self, lifecycle, admin, seed_inventory):
        seed_inventory(2)
        record = lifecycle.create(admin, BackupOptions())

        lifecycle.restore(admin, record.id)

        assert lifecycle.get(admin, record.id).validated

    def test_timeout_rolls_back_and_keeps_snapshot(
        self, make_lifecycle, admin, edited, session_factory
    ):
        impatient = make_lifecycle(restore_timeout_seconds=0)

        with pytest.raises(RestoreTimeoutError) as exc_info:
            impatient.restore(admin, edited.id)

        assert exc_info.value.retryable
        assert _quantities(session_factory)["B-1000"] == 999
        assert "B-NEW" in _quantities(session_factory)
        [pre] = _backups(session_factory, BackupType.PRE_RESTORE)
        [entry] = _audit(session_factory, AuditAction.RESTORE)
        assert entry.changes["outcome"] == "failed"
        assert entry.changes["pre_restore_backup_id"] == str(pre.id)
        assert not impatient.lock.locked()

    def test_wrong_passphrase(self, lifecycle, admin, seed_inventory, session_factory):
        seed_inventory(3)
        record = lifecycle.create(
            admin, BackupOptions(encrypt=True, passphrase="pharmacy-vault")
        )
        with session_scope(session_factory) as session:
            session.execute(select(InventoryItem).where(InventoryItem.batch == "B-1000")).scalar_one().quantity = 1

        with pytest.raises(DecryptionError):
            lifecycle.restore(admin, record.id, RestoreOptions(passphrase="not-the-one"))

        assert _quantities(session_factory)["B-1000"] == 1
        assert len(_backups(session_factory, BackupType.PRE_RESTORE)) == 1

        lifecycle.restore(admin, record.id, RestoreOptions(passphrase="pharmacy-vault"))

        assert _quantities(session_factory)["B-1000"] == 10
        assert len(_backups(session_factory, BackupType.PRE_RESTORE)) == 2

    @pytest.mark.parametrize("fmt", [BackupFormat.CSV, BackupFormat.SQL])
    def test_other_formats_restore(self, lifecycle, admin, seed_inventory, seed_setting, session_factory, fmt):
        seed_inventory(3)
        seed_setting(value={"threshold": 25, "units": ["box", "vial"]})
        record = lifecycle.create(admin, BackupOptions(format=fmt))
        with session_scope(session_factory) as session:
            session.execute(select(InventoryItem).where(InventoryItem.batch == "B-1002")).scalar_one().quantity = 0

        lifecycle.restore(admin, record.id)

        assert _quantities(session_factory)["B-1002"] == 30
        with session_factory() as session:
            assert session.execute(select(SystemSetting)).scalar_one().value == {
                "threshold": 25,
                "units": ["box", "vial"],
            }

    def test_failed_backup_cannot_be_restored(self, lifecycle, admin, session_factory, monkeypatch):
        with monkeypatch.context() as patch:
            patch.setattr(lifecycle_module, "compute_checksum", _broken_checksum)
            with pytest.raises(RuntimeError):
                lifecycle.create(admin, BackupOptions())
        [failed] = _backups(session_factory)

        with pytest.raises(InvalidBackupRequestError, match="COMPLETED"):
            lifecycle.restore(admin, failed.id)


class TestDelete:
    def _age(self, session_factory, backup_id, days: int) -> None:
        with session_scope(session_factory) as session:
            backup = session.get(Backup, backup_id)
            backup.created_at = backup.created_at - timedelta(days=days)

    def test_manual_backup_is_removed_with_its_artifact(
        self, lifecycle, admin, storage, session_factory
    ):
        record = lifecycle.create(admin, BackupOptions())

        lifecycle.delete(admin, record.id)

        assert _backups(session_factory) == []
        assert not storage.exists(record.filename)
        [entry] = _audit(session_factory, AuditAction.DELETE)
        assert entry.entity_type == AuditEntityType.BACKUP.value
        assert entry.changes["filename"] == record.filename

    def test_recent_automatic_backup_is_protected(self, lifecycle, admin):
        record = lifecycle.create(admin, BackupOptions(type=BackupType.AUTOMATIC))

        with pytest.raises(RetentionViolationError) as exc_info:
            lifecycle.delete(admin, record.id)

        assert "daily" in exc_info.value.window

    def test_expired_automatic_backup_can_be_deleted(self, lifecycle, admin, session_factory):
        record = lifecycle.create(admin, BackupOptions(type=BackupType.AUTOMATIC))
        self._age(session_factory, record.id, 400)

        lifecycle.delete(admin, record.id)

        assert _backups(session_factory) == []

    def test_in_progress_cannot_be_deleted(self, lifecycle, admin, session_factory, deterministic_clock):
        with session_scope(session_factory) as session:
            backup = Backup(
                filename="stuck.json",
                type=BackupType.MANUAL.value,
                format=BackupFormat.JSON.value,
                status=BackupStatus.IN_PROGRESS.value,
                created_at=deterministic_clock.now(),
                created_by="admin-1",
            )
            session.add(backup)
            session.flush()
            backup_id = backup.id

        with pytest.raises(InvalidBackupRequestError, match="in-progress"):
            lifecycle.delete(admin, backup_id)

    def test_corrupted_is_kept_until_superseded(self, lifecycle, admin, storage, session_factory):
        record = lifecycle.create(admin, BackupOptions())
        _corrupt(storage, record.filename)
        lifecycle.validate(admin, record.id)

        with pytest.raises(InvalidBackupRequestError, match="forensics"):
            lifecycle.delete(admin, record.id)

        lifecycle.delete(admin, record.id, superseded=True)
        assert _backups(session_factory) == []

    def test_superseded_automatic_backup_ignores_retention(self, lifecycle, admin, session_factory):
        record = lifecycle.create(admin, BackupOptions(type=BackupType.AUTOMATIC))

        lifecycle.delete(admin, record.id, superseded=True)

        assert _backups(session_factory) == []
        [entry] = _audit(session_factory, AuditAction.DELETE)
        assert entry.changes["reason"] == "superseded"

    def test_unknown_backup(self, lifecycle, admin):
        with pytest.raises(BackupNotFoundError):
            lifecycle.delete(admin, uuid4())


class TestDownloadAndListing:
    def test_download_returns_stored_bytes(self, lifecycle, admin, storage, session_factory):
        record = lifecycle.create(admin, BackupOptions(format=BackupFormat.CSV))

        download = lifecycle.download(admin, record.id)

        assert download.data == storage.read(record.filename)
        assert download.content_type == "text/csv"
        assert download.filename == record.filename
        [entry] = _audit(session_factory, AuditAction.EXPORT)
        assert entry.changes == {"operation": "download", "filename": record.filename}

    def test_tampered_artifact_is_not_served(self, lifecycle, admin, storage):
        record = lifecycle.create(admin, BackupOptions())
        _corrupt(storage, record.filename)

        with pytest.raises(ChecksumMismatchError):
            lifecycle.download(admin, record.id)

    def test_corrupted_backup_is_not_served(self, lifecycle, admin, storage):
        record = lifecycle.create(admin, BackupOptions())
        _corrupt(storage, record.filename)
        lifecycle.validate(admin, record.id)

        with pytest.raises(BackupCorruptedError):
            lifecycle.download(admin, record.id)

    def test_list_filters(self, lifecycle, admin, deterministic_clock):
        manual = lifecycle.create(admin, BackupOptions())
        deterministic_clock.advance(60)
        automatic = lifecycle.create(admin, BackupOptions(type=BackupType.AUTOMATIC))

        assert [b.id for b in lifecycle.list_backups(admin)] == [automatic.id, manual.id]
        assert [b.id for b in lifecycle.list_backups(admin, backup_type="MANUAL")] == [manual.id]
        assert lifecycle.list_backups(admin, status=BackupStatus.FAILED) == []
        assert len(lifecycle.list_backups(admin, limit=1)) == 1

    def test_health_is_readable_by_managers(self, lifecycle, admin, manager, data_entry):
        lifecycle.create(admin, BackupOptions())

        health = lifecycle.health(manager)

        assert health.last_backup_at is not None
        assert health.storage_used_bytes > 0
        with pytest.raises(PermissionDeniedError):
            lifecycle.health(data_entry)


class TestApplyRetention:
    def test_prunes_only_unprotected_automatic_backups(
        self, lifecycle, admin, session_factory, storage, deterministic_clock
    ):
        old_manual = lifecycle.create(admin, BackupOptions())
        stale = []
        for _ in range(3):
            deterministic_clock.advance(60)
            stale.append(lifecycle.create(admin, BackupOptions(type=BackupType.AUTOMATIC)))
        deterministic_clock.advance(60)
        fresh = lifecycle.create(admin, BackupOptions(type=BackupType.AUTOMATIC))
        with session_scope(session_factory) as session:
            for record in [old_manual, *stale]:
                backup = session.get(Backup, record.id)
                backup.created_at = backup.created_at - timedelta(days=500)

        deleted = lifecycle.apply_retention(admin)

        assert set(deleted) == {r.id for r in stale}
        remaining = {b.id for b in _backups(session_factory)}
        assert remaining == {old_manual.id, fresh.id}
        assert all(not storage.exists(r.filename) for r in stale)
        reasons = {e.changes["reason"] for e in _audit(session_factory, AuditAction.DELETE)}
        assert reasons == {"retention"}
