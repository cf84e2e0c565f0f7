"""
BackupLifecycleManager -- create, validate, restore, delete, download.

Contract:
    Every mutating operation runs under the process-wide BackupLock and
    writes its audit entry through the chain writer inside
    audit_unit_of_work, so the status change and its audit entry commit
    together.

    create:
        1. quota check (refuse at 95% of max_storage_bytes)
        2. IN_PROGRESS row committed before any artifact byte is written
        3. build -> write (temp file + rename) -> checksum
        4. COMPLETED + BACKUP audit entry in one transaction
        On any failure: partial artifact deleted, status FAILED with
        error_message, BACKUP audit entry with outcome=failed, and the
        original error propagates.

    restore:
        1. COMPLETED required; the artifact is re-validated every time and a
           checksum mismatch marks it CORRUPTED before anything is applied
        2. exactly one PRE_RESTORE backup (JSON, everything included)
        3. decrypt + parse, apply in ONE transaction under a deadline
        4. RESTORE audit entry: in the restore transaction on success, in
           a fresh transaction after rollback on failure.  The pre-restore
           backup is never removed.

Failure modes:
    - BackupLockHeldError: another create/restore holds the lock.
    - BackupCorruptedError / DecryptionError: never restorable.
    - RestoreTimeoutError: deadline passed; everything rolled back.
    - RestoreFailedError: any other restore failure, carrying the
      pre-restore backup id for manual recovery.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime
from typing import Generator
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.audit import AuditAction, AuditEntityType, NetworkMeta
from inventory_kernel.domain.clock import Clock, SystemClock, as_utc
from inventory_kernel.domain.roles import Actor, Permission, require_permission
from inventory_kernel.exceptions import (
    BackupCorruptedError,
    BackupNotFoundError,
    ChecksumMismatchError,
    InvalidBackupRequestError,
    InventoryKernelError,
    RestoreFailedError,
    RestoreTimeoutError,
    RetentionViolationError,
    StorageQuotaExceededError,
)
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.services.audit_writer import (
    AuditChainLock,
    AuditChainWriter,
    AuditFailureCounter,
    audit_unit_of_work,
)
from inventory_kernel.utils.signing import AuditSigner

from inventory_backup.domain.health import evaluate_health
from inventory_backup.domain.retention import RetentionCandidate, plan_retention
from inventory_backup.domain.types import (
    BackupDownload,
    BackupFormat,
    BackupHealth,
    BackupOptions,
    BackupRecord,
    BackupStatus,
    BackupType,
    RestoreMode,
    RestoreOptions,
    RestoreSummary,
    ValidationReport,
)
from inventory_backup.models.backup import Backup
from inventory_backup.services.builder import ArtifactBuilder
from inventory_backup.services.config_service import BackupConfigService
from inventory_backup.services.encryption import ArtifactCipher
from inventory_backup.services.locks import BackupLock
from inventory_backup.services.restore import RestoreApplier
from inventory_backup.services.storage import LocalArtifactStorage
from inventory_backup.services.validator import BackupValidator, compute_checksum

logger = get_logger("backup.lifecycle")

QUOTA_REFUSE_RATIO = 0.95
ENCRYPTED_SUFFIX = ".encrypted"
# PostgreSQL SQLSTATE for a statement cancelled by statement_timeout
_QUERY_CANCELED = "57014"


def backup_filename(
    created_at: datetime,
    backup_type: BackupType,
    fmt: BackupFormat,
    encrypted: bool,
    attempt: int = 0,
) -> str:
    stamp = as_utc(created_at).strftime("%Y%m%dT%H%M%S%fZ")
    stem = f"{stamp}-{backup_type.value.lower()}"
    if attempt:
        stem = f"{stem}-{attempt + 1}"
    name = f"{stem}.{fmt.extension}"
    return name + ENCRYPTED_SUFFIX if encrypted else name


def _coerce_id(backup_id: UUID | str) -> UUID:
    return backup_id if isinstance(backup_id, UUID) else UUID(str(backup_id))


def _network_for(actor: Actor, network: NetworkMeta | None) -> NetworkMeta:
    return network or NetworkMeta(actor.ip_address, actor.user_agent)


class BackupLifecycleManager:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        storage: LocalArtifactStorage,
        cipher: ArtifactCipher,
        signer: AuditSigner,
        chain_lock: AuditChainLock,
        backup_lock: BackupLock,
        clock: Clock | None = None,
        restore_timeout_seconds: float = 300.0,
        max_storage_bytes: int | None = None,
        failure_counter: AuditFailureCounter | None = None,
    ):
        self._session_factory = session_factory
        self._storage = storage
        self._cipher = cipher
        self._signer = signer
        self._chain_lock = chain_lock
        self._lock = backup_lock
        self._clock = clock or SystemClock()
        self._restore_timeout_seconds = restore_timeout_seconds
        self._max_storage_bytes = max_storage_bytes
        self._failures = failure_counter or AuditFailureCounter()

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    @property
    def lock(self) -> BackupLock:
        return self._lock

    @property
    def storage(self) -> LocalArtifactStorage:
        return self._storage

    @contextmanager
    def _unit_of_work(self) -> Generator[Session, None, None]:
        with audit_unit_of_work(self._session_factory, self._chain_lock) as session:
            yield session

    def _writer(self, session: Session) -> AuditChainWriter:
        return AuditChainWriter(
            session, self._signer, self._clock, self._chain_lock, self._failures
        )

    def _config_service(self, session: Session) -> BackupConfigService:
        return BackupConfigService(session, str(self._storage.base_dir), self._clock)

    def _get_model(self, session: Session, backup_id: UUID | str) -> Backup:
        backup = session.get(Backup, _coerce_id(backup_id))
        if backup is None:
            raise BackupNotFoundError(str(backup_id))
        return backup

    def _load(self, backup_id: UUID | str) -> BackupRecord:
        with session_scope(self._session_factory) as session:
            return BackupRecord.from_model(self._get_model(session, backup_id))

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(
        self,
        actor: Actor,
        options: BackupOptions,
        network: NetworkMeta | None = None,
    ) -> BackupRecord:
        require_permission(actor, Permission.BACKUP_MANAGE)
        with self._lock.hold("create"):
            return self._create_locked(actor.actor_id, options, _network_for(actor, network))

    def _check_quota(self) -> None:
        if not self._max_storage_bytes:
            return
        used = self._storage.used_bytes()
        if used >= self._max_storage_bytes * QUOTA_REFUSE_RATIO:
            logger.error(
                "backup_storage_quota_exceeded",
                extra={"used_bytes": used, "limit_bytes": self._max_storage_bytes},
            )
            raise StorageQuotaExceededError(used, self._max_storage_bytes)

    def _unique_filename(self, session: Session, now: datetime, options: BackupOptions) -> str:
        attempt = 0
        while True:
            filename = backup_filename(now, options.type, options.format, options.encrypt, attempt)
            taken = session.execute(
                select(Backup.id).where(Backup.filename == filename)
            ).first()
            if taken is None and not self._storage.exists(filename):
                return filename
            attempt += 1

    def _create_locked(
        self,
        actor_id: str,
        options: BackupOptions,
        network: NetworkMeta,
    ) -> BackupRecord:
        self._check_quota()
        now = as_utc(self._clock.now())

        with session_scope(self._session_factory) as session:
            filename = self._unique_filename(session, now, options)
            backup = Backup(
                filename=filename,
                type=options.type.value,
                format=options.format.value,
                status=BackupStatus.IN_PROGRESS.value,
                file_size=0,
                plaintext_size=0,
                record_count=0,
                created_at=now,
                created_by=actor_id,
                include_audit_logs=options.include_audit_logs,
                include_user_data=options.include_user_data,
                include_settings=options.include_settings,
                date_range_from=options.date_from,
                date_range_to=options.date_to,
                encrypted=options.encrypt,
                validated=False,
                notes=options.notes,
            )
            session.add(backup)
            session.flush()
            backup_id = backup.id

        with LogContext.bind(actor_id=actor_id, backup_id=str(backup_id)):
            logger.info(
                "backup_started",
                extra={
                    "artifact": filename,
                    "backup_type": options.type.value,
                    "format": options.format.value,
                    "encrypted": options.encrypt,
                },
            )
            try:
                with session_scope(self._session_factory) as session:
                    artifact = ArtifactBuilder(session, self._cipher, self._clock).build(options)
                self._storage.write(filename, artifact.data)
                checksum = compute_checksum(artifact.data)

                with self._unit_of_work() as session:
                    backup = self._get_model(session, backup_id)
                    backup.status = BackupStatus.COMPLETED.value
                    backup.file_size = len(artifact.data)
                    backup.plaintext_size = artifact.plaintext_size
                    backup.record_count = artifact.record_count
                    backup.checksum = checksum
                    session.flush()
                    self._writer(session).record(
                        actor_id,
                        AuditAction.BACKUP,
                        AuditEntityType.BACKUP,
                        backup_id,
                        changes={
                            "operation": "create",
                            "outcome": "completed",
                            "filename": filename,
                            "type": options.type.value,
                            "format": options.format.value,
                            "encrypted": options.encrypt,
                            "record_count": artifact.record_count,
                            "checksum": checksum,
                        },
                        network=network,
                    )
                    record = BackupRecord.from_model(backup)
            except Exception as exc:
                self._discard_artifact(filename)
                self._mark_failed(actor_id, backup_id, filename, options, exc, network)
                raise

            logger.info(
                "backup_completed",
                extra={
                    "artifact": filename,
                    "record_count": record.record_count,
                    "size": record.file_size,
                },
            )
            return record

    def _discard_artifact(self, filename: str) -> None:
        try:
            self._storage.delete(filename)
        except OSError:
            logger.error("partial_artifact_not_removed", extra={"artifact": filename}, exc_info=True)

    def _mark_failed(
        self,
        actor_id: str,
        backup_id: UUID,
        filename: str,
        options: BackupOptions,
        exc: Exception,
        network: NetworkMeta,
    ) -> None:
        reason = f"{type(exc).__name__}: {exc}"[:1000]
        logger.error(
            "backup_failed",
            extra={"artifact": filename, "error": reason},
            exc_info=exc,
        )
        try:
            with self._unit_of_work() as session:
                backup = self._get_model(session, backup_id)
                backup.status = BackupStatus.FAILED.value
                backup.error_message = reason
                session.flush()
                self._writer(session).record(
                    actor_id,
                    AuditAction.BACKUP,
                    AuditEntityType.BACKUP,
                    backup_id,
                    changes={
                        "operation": "create",
                        "outcome": "failed",
                        "filename": filename,
                        "type": options.type.value,
                        "format": options.format.value,
                        "error": reason,
                    },
                    network=network,
                )
        except Exception:
            # The caller still receives the original error.
            logger.critical(
                "backup_failure_not_recorded",
                extra={"artifact": filename},
                exc_info=True,
            )

    # -------------------------------------------------------------------------
    # Validate
    # -------------------------------------------------------------------------

    def validate(
        self,
        actor: Actor,
        backup_id: UUID | str,
        network: NetworkMeta | None = None,
    ) -> ValidationReport:
        require_permission(actor, Permission.BACKUP_MANAGE)
        with self._lock.hold("validate"):
            return self._validate_locked(actor.actor_id, backup_id, _network_for(actor, network))

    def _validate_locked(
        self,
        actor_id: str,
        backup_id: UUID | str,
        network: NetworkMeta,
    ) -> ValidationReport:
        with self._unit_of_work() as session:
            backup = self._get_model(session, backup_id)
            already_corrupted = backup.status == BackupStatus.CORRUPTED.value
            report = BackupValidator(self._storage, self._clock).validate(backup)
            session.flush()
            if not report.valid and not already_corrupted:
                self._writer(session).record(
                    actor_id,
                    AuditAction.BACKUP,
                    AuditEntityType.BACKUP,
                    backup.id,
                    changes={
                        "operation": "validate",
                        "outcome": "corrupted",
                        "filename": backup.filename,
                        "reason": report.reason,
                    },
                    network=network,
                )
        return report

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(
        self,
        actor: Actor,
        backup_id: UUID | str,
        options: RestoreOptions | None = None,
        network: NetworkMeta | None = None,
    ) -> RestoreSummary:
        require_permission(actor, Permission.BACKUP_MANAGE)
        options = options or RestoreOptions()
        with self._lock.hold("restore"):
            return self._restore_locked(
                actor.actor_id, _coerce_id(backup_id), options, _network_for(actor, network)
            )

    def _restore_locked(
        self,
        actor_id: str,
        backup_id: UUID,
        options: RestoreOptions,
        network: NetworkMeta,
    ) -> RestoreSummary:
        pre_restore_id: UUID | None = None
        with LogContext.bind(actor_id=actor_id, backup_id=str(backup_id)):
            try:
                record = self._load(backup_id)
                if record.status == BackupStatus.CORRUPTED:
                    raise BackupCorruptedError(
                        str(backup_id), record.error_message or "backup is marked corrupted"
                    )
                if record.status != BackupStatus.COMPLETED:
                    raise InvalidBackupRequestError(
                        f"only COMPLETED backups can be restored, not {record.status.value}"
                    )
                # Re-validated on every restore, not only the first time
                report = self._validate_locked(actor_id, backup_id, network)
                if not report.valid:
                    raise BackupCorruptedError(
                        str(backup_id), report.reason or "validation failed"
                    )

                if options.mode is not RestoreMode.PREVIEW:
                    pre_restore = self._create_locked(
                        actor_id,
                        BackupOptions(
                            format=BackupFormat.JSON,
                            type=BackupType.PRE_RESTORE,
                            include_audit_logs=True,
                            include_user_data=True,
                            include_settings=True,
                            notes=f"Automatic snapshot before restoring {record.filename}",
                        ),
                        network,
                    )
                    pre_restore_id = pre_restore.id

                data = self._storage.read(record.filename)
                actual = compute_checksum(data)
                if actual != record.checksum:
                    raise ChecksumMismatchError(str(backup_id), record.checksum or "", actual)
                summary = self._apply(actor_id, record, data, options, pre_restore_id, network)
            except Exception as exc:
                self._record_restore_failure(
                    actor_id, backup_id, options.mode, pre_restore_id, exc, network
                )
                if isinstance(exc, InventoryKernelError):
                    raise
                raise RestoreFailedError(
                    str(backup_id),
                    f"{type(exc).__name__}: {exc}",
                    str(pre_restore_id) if pre_restore_id else None,
                ) from exc

            logger.info(
                "restore_completed",
                extra={
                    "mode": options.mode.value,
                    "pre_restore_backup_id": str(pre_restore_id) if pre_restore_id else None,
                    "inventory_items": summary.inventory_items,
                    "settings": summary.settings,
                },
            )
            return summary

    def _apply_statement_timeout(self, session: Session) -> None:
        if session.get_bind().dialect.name == "postgresql":
            millis = int(self._restore_timeout_seconds * 1000)
            session.execute(text(f"SET LOCAL statement_timeout = {millis}"))

    def _apply(
        self,
        actor_id: str,
        record: BackupRecord,
        data: bytes,
        options: RestoreOptions,
        pre_restore_id: UUID | None,
        network: NetworkMeta,
    ) -> RestoreSummary:
        deadline = time.monotonic() + self._restore_timeout_seconds
        try:
            with self._unit_of_work() as session:
                self._apply_statement_timeout(session)
                try:
                    payload = ArtifactBuilder(session, self._cipher, self._clock).parse(
                        data, record.format, record.encrypted, options.passphrase
                    )
                except ValueError as exc:
                    raise RestoreFailedError(
                        str(record.id),
                        f"artifact could not be parsed: {exc}",
                        str(pre_restore_id) if pre_restore_id else None,
                    ) from exc

                applier = RestoreApplier(session, record.id, self._restore_timeout_seconds)
                summary = applier.apply(payload, options.mode, pre_restore_id, deadline)
                self._writer(session).record(
                    actor_id,
                    AuditAction.RESTORE,
                    AuditEntityType.BACKUP,
                    record.id,
                    changes={
                        "operation": "restore",
                        "outcome": "preview" if options.mode is RestoreMode.PREVIEW else "completed",
                        "mode": options.mode.value,
                        "filename": record.filename,
                        "pre_restore_backup_id": pre_restore_id,
                        "inventory_items": summary.inventory_items,
                        "settings": summary.settings,
                        "removed_inventory_items": summary.removed_inventory_items,
                        "removed_settings": summary.removed_settings,
                    },
                    network=network,
                )
        except OperationalError as exc:
            if getattr(exc.orig, "pgcode", None) == _QUERY_CANCELED:
                raise RestoreTimeoutError(str(record.id), self._restore_timeout_seconds) from exc
            raise
        return summary

    def _record_restore_failure(
        self,
        actor_id: str,
        backup_id: UUID,
        mode: RestoreMode,
        pre_restore_id: UUID | None,
        exc: Exception,
        network: NetworkMeta,
    ) -> None:
        reason = f"{type(exc).__name__}: {exc}"[:1000]
        logger.error(
            "restore_failed",
            extra={
                "mode": mode.value,
                "pre_restore_backup_id": str(pre_restore_id) if pre_restore_id else None,
                "error": reason,
            },
            exc_info=exc,
        )
        try:
            with self._unit_of_work() as session:
                self._writer(session).record(
                    actor_id,
                    AuditAction.RESTORE,
                    AuditEntityType.BACKUP,
                    backup_id,
                    changes={
                        "operation": "restore",
                        "outcome": "failed",
                        "mode": mode.value,
                        "pre_restore_backup_id": pre_restore_id,
                        "error": reason,
                    },
                    network=network,
                )
        except Exception:
            logger.critical("restore_failure_not_recorded", exc_info=True)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(
        self,
        actor: Actor,
        backup_id: UUID | str,
        superseded: bool = False,
        network: NetworkMeta | None = None,
    ) -> None:
        require_permission(actor, Permission.BACKUP_MANAGE)
        with self._lock.hold("delete"):
            self._delete_locked(
                actor.actor_id,
                backup_id,
                superseded=superseded,
                enforce_retention=not superseded,
                reason="superseded" if superseded else "requested",
                network=_network_for(actor, network),
            )

    def retention_windows(self, session: Session, backup: Backup) -> tuple[str, ...]:
        policy = self._config_service(session).get().retention
        candidates = [
            RetentionCandidate.from_record(BackupRecord.from_model(b))
            for b in session.execute(
                select(Backup).where(Backup.type == BackupType.AUTOMATIC.value)
            ).scalars()
        ]
        plan = plan_retention(candidates, policy, self._clock.now())
        return plan.windows_for(backup.id)

    def _delete_locked(
        self,
        actor_id: str,
        backup_id: UUID | str,
        *,
        superseded: bool,
        enforce_retention: bool,
        reason: str,
        network: NetworkMeta,
    ) -> None:
        with self._unit_of_work() as session:
            backup = self._get_model(session, backup_id)
            status = BackupStatus(backup.status)
            if status == BackupStatus.IN_PROGRESS:
                raise InvalidBackupRequestError("an in-progress backup cannot be deleted")
            if status == BackupStatus.CORRUPTED and not superseded:
                raise InvalidBackupRequestError(
                    "corrupted backups are kept for forensics until superseded"
                )
            if enforce_retention and backup.type == BackupType.AUTOMATIC.value:
                windows = self.retention_windows(session, backup)
                if windows:
                    raise RetentionViolationError(str(backup.id), ", ".join(windows))

            filename = backup.filename
            self._writer(session).record(
                actor_id,
                AuditAction.DELETE,
                AuditEntityType.BACKUP,
                backup.id,
                changes={
                    "operation": "delete",
                    "filename": filename,
                    "type": backup.type,
                    "status": backup.status,
                    "reason": reason,
                },
                network=network,
            )
            session.delete(backup)

        # Row is gone; an orphaned file is harmless, a row without a file is not.
        self._storage.delete(filename)
        logger.info(
            "backup_deleted",
            extra={"backup_id": str(backup_id), "artifact": filename, "reason": reason},
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, actor: Actor, backup_id: UUID | str) -> BackupRecord:
        require_permission(actor, Permission.BACKUP_MANAGE)
        return self._load(backup_id)

    def list_backups(
        self,
        actor: Actor,
        status: BackupStatus | str | None = None,
        backup_type: BackupType | str | None = None,
        limit: int | None = None,
    ) -> list[BackupRecord]:
        require_permission(actor, Permission.BACKUP_MANAGE)
        return self._records(status=status, backup_type=backup_type, limit=limit)

    def _records(
        self,
        status: BackupStatus | str | None = None,
        backup_type: BackupType | str | None = None,
        limit: int | None = None,
    ) -> list[BackupRecord]:
        stmt = select(Backup).order_by(Backup.created_at.desc(), Backup.filename.desc())
        if status is not None:
            stmt = stmt.where(Backup.status == BackupStatus(status).value)
        if backup_type is not None:
            stmt = stmt.where(Backup.type == BackupType(backup_type).value)
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self._session_factory) as session:
            return [BackupRecord.from_model(b) for b in session.execute(stmt).scalars()]

    def download(
        self,
        actor: Actor,
        backup_id: UUID | str,
        network: NetworkMeta | None = None,
    ) -> BackupDownload:
        require_permission(actor, Permission.BACKUP_MANAGE)
        record = self._load(backup_id)
        if record.status == BackupStatus.CORRUPTED:
            raise BackupCorruptedError(str(record.id), record.error_message or "backup is corrupted")
        if record.status != BackupStatus.COMPLETED:
            raise InvalidBackupRequestError(
                f"only COMPLETED backups can be downloaded, not {record.status.value}"
            )

        data = self._storage.read(record.filename)
        actual = compute_checksum(data)
        if actual != record.checksum:
            logger.critical(
                "backup_download_checksum_mismatch",
                extra={"backup_id": str(record.id), "artifact": record.filename},
            )
            raise ChecksumMismatchError(str(record.id), record.checksum or "", actual)

        with self._unit_of_work() as session:
            self._writer(session).record(
                actor.actor_id,
                AuditAction.EXPORT,
                AuditEntityType.BACKUP,
                record.id,
                changes={"operation": "download", "filename": record.filename},
                network=_network_for(actor, network),
            )
        return BackupDownload(data=data, content_type=record.content_type, filename=record.filename)

    def health(self, actor: Actor, now: datetime | None = None) -> BackupHealth:
        require_permission(actor, Permission.BACKUP_CONFIG_READ)
        with session_scope(self._session_factory) as session:
            config = self._config_service(session).get()
        return evaluate_health(
            self._records(),
            config,
            self._storage.used_bytes(),
            self._max_storage_bytes,
            now or self._clock.now(),
        )

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def apply_retention(self, actor: Actor, now: datetime | None = None) -> list[UUID]:
        """
        Delete every AUTOMATIC backup that no retention window protects.

        Returns:
            Ids of the deleted backups.  A backup that fails to delete is
            logged and skipped; the rest of the plan still runs.
        """
        require_permission(actor, Permission.BACKUP_MANAGE)
        network = _network_for(actor, None)
        with self._lock.hold("retention"):
            with session_scope(self._session_factory) as session:
                policy = self._config_service(session).get().retention
            candidates = [
                RetentionCandidate.from_record(r)
                for r in self._records(backup_type=BackupType.AUTOMATIC)
            ]
            plan = plan_retention(candidates, policy, now or self._clock.now())

            deleted: list[UUID] = []
            for backup_id in plan.prune:
                try:
                    self._delete_locked(
                        actor.actor_id,
                        backup_id,
                        superseded=True,
                        enforce_retention=False,
                        reason="retention",
                        network=network,
                    )
                except Exception:
                    logger.exception("retention_delete_failed", extra={"backup_id": str(backup_id)})
                    continue
                deleted.append(backup_id)

        logger.info(
            "retention_applied",
            extra={"kept": len(plan.keep), "pruned": len(deleted)},
        )
        return deleted
