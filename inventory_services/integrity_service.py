"""
IntegrityService -- the public surface of the integrity core.

Responsibility:
    One facade over audit recording, audit queries and verification,
    the backup lifecycle, backup configuration, and reverts.  Each call
    opens its own unit of work; callers never see a Session.

Architecture position:
    Services -- the only layer that composes kernel services with the
    backup subsystem.  Constructed once by inventory_services.bootstrap.

Invariants enforced:
    - Every write that appends to the audit chain runs inside
      audit_unit_of_work, so chain appends are serialized and commit
      together with the data they describe.
    - Role gates are checked before any read or mutation.
    - Critical audit writes propagate their errors; best-effort (VIEW,
      EXPORT, ...) writes are counted and logged instead.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generator, Mapping
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.audit import (
    AuditAction,
    AuditEntityType,
    AuditEntryDetails,
    AuditEntryRecord,
    AuditFilters,
    AuditPage,
    AuditStatistics,
    ChainVerification,
    NetworkMeta,
    PageRequest,
    is_critical,
)
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.roles import Actor, Permission, require_permission
from inventory_kernel.exceptions import InvalidAuditQueryError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.selectors.audit_selector import AuditSelector, export_filename
from inventory_kernel.services.audit_verifier import AuditChainVerifier
from inventory_kernel.services.audit_writer import (
    AuditChainLock,
    AuditChainWriter,
    AuditFailureCounter,
    DeferredAuditQueue,
    audit_unit_of_work,
)
from inventory_kernel.services.revert_service import RevertService
from inventory_kernel.utils.signing import AuditSigner

from inventory_backup.domain.types import (
    BackupConfigUpdate,
    BackupConfigView,
    BackupDownload,
    BackupHealth,
    BackupOptions,
    BackupRecord,
    BackupStatus,
    BackupType,
    RestoreOptions,
    RestoreSummary,
)
from inventory_backup.services.config_service import BackupConfigService
from inventory_backup.services.lifecycle import BackupLifecycleManager

logger = get_logger("services.integrity")

EXPORT_CONTENT_TYPES = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


class IntegrityService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        signer: AuditSigner,
        chain_lock: AuditChainLock,
        lifecycle: BackupLifecycleManager,
        deferred_audit: DeferredAuditQueue | None = None,
        clock: Clock | None = None,
        failure_counter: AuditFailureCounter | None = None,
    ):
        self._session_factory = session_factory
        self._signer = signer
        self._chain_lock = chain_lock
        self._lifecycle = lifecycle
        self._clock = clock or SystemClock()
        self._failures = failure_counter or AuditFailureCounter()
        self._deferred = deferred_audit or DeferredAuditQueue(
            session_factory, signer, chain_lock, self._clock, self._failures
        )

    @contextmanager
    def _unit_of_work(self) -> Generator[Session, None, None]:
        with audit_unit_of_work(self._session_factory, self._chain_lock) as session:
            yield session

    def _writer(self, session: Session) -> AuditChainWriter:
        return AuditChainWriter(
            session, self._signer, self._clock, self._chain_lock, self._failures
        )

    @property
    def audit_failure_count(self) -> int:
        return self._failures.count

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    def record_audit(
        self,
        actor_id: str,
        action: AuditAction | str,
        entity_type: AuditEntityType | str,
        entity_id: Any,
        diff: Mapping[str, Any] | None = None,
        network_meta: NetworkMeta | None = None,
    ) -> UUID | None:
        """
        Append one entry in its own transaction.

        Returns:
            The new entry id, or None when a best-effort write was dropped.

        Raises:
            Any persistence error, for critical actions.
        """
        critical = is_critical(action, entity_type)
        try:
            with self._unit_of_work() as session:
                entry = self._writer(session).record(
                    actor_id, action, entity_type, entity_id,
                    changes=diff, network=network_meta,
                )
                return entry.id if entry is not None else None
        except Exception:
            if critical:
                raise
            failures = self._failures.increment()
            logger.warning(
                "audit_write_dropped",
                extra={"actor_id": actor_id, "failure_count": failures},
                exc_info=True,
            )
            return None

    def defer_audit(
        self,
        actor_id: str,
        action: AuditAction | str,
        entity_type: AuditEntityType | str,
        entity_id: Any,
        diff: Mapping[str, Any] | None = None,
        network_meta: NetworkMeta | None = None,
    ) -> None:
        """Queue a best-effort entry for the next ``flush_deferred_audit``."""
        self._deferred.enqueue(actor_id, action, entity_type, entity_id, diff, network_meta)

    def flush_deferred_audit(self) -> int:
        return self._deferred.flush_deferred()

    def query_audit(
        self,
        actor: Actor,
        filters: AuditFilters | None = None,
        page: PageRequest | None = None,
    ) -> AuditPage:
        with session_scope(self._session_factory) as session:
            return AuditSelector(session).query_logs(actor, filters, page)

    def verify_audit_chain(
        self,
        start_seq: int | None = None,
        end_seq: int | None = None,
        actor: Actor | None = None,
    ) -> ChainVerification:
        if actor is not None:
            require_permission(actor, Permission.AUDIT_VERIFY)
        with session_scope(self._session_factory) as session:
            return AuditChainVerifier(session, self._signer).verify_chain(start_seq, end_seq)

    def audit_statistics(
        self,
        actor: Actor,
        filters: AuditFilters | None = None,
    ) -> AuditStatistics:
        with session_scope(self._session_factory) as session:
            return AuditSelector(session).statistics(actor, filters)

    def audit_entry_details(self, actor: Actor, entry_id: UUID) -> AuditEntryDetails:
        with session_scope(self._session_factory) as session:
            selector = AuditSelector(session)
            record = selector.get_entry(actor, entry_id)
            related = selector.related_entries(actor, record)
            entry = session.get(AuditEntry, record.id)
            chain_valid = AuditChainVerifier(session, self._signer).verify_entry(entry)
        return AuditEntryDetails(entry=record, related=related, chain_valid=chain_valid)

    def export_audit(
        self,
        actor: Actor,
        filters: AuditFilters | None = None,
        fmt: str = "csv",
    ) -> BackupDownload:
        fmt = fmt.lower()
        if fmt not in EXPORT_CONTENT_TYPES:
            raise InvalidAuditQueryError(f"unsupported export format {fmt!r}")

        with session_scope(self._session_factory) as session:
            selector = AuditSelector(session)
            data = selector.export_csv(actor, filters) if fmt == "csv" else selector.export_xlsx(actor, filters)

        self.record_audit(
            actor.actor_id,
            AuditAction.EXPORT,
            AuditEntityType.AUDIT_LOG,
            "audit-trail",
            diff={"format": fmt, "size": len(data)},
            network_meta=NetworkMeta(actor.ip_address, actor.user_agent),
        )
        return BackupDownload(
            data=data,
            content_type=EXPORT_CONTENT_TYPES[fmt],
            filename=export_filename(fmt, self._clock.now()),
        )

    def revert_change(
        self,
        actor: Actor,
        entry_id: UUID,
        network: NetworkMeta | None = None,
    ) -> AuditEntryRecord:
        with self._unit_of_work() as session:
            entry = RevertService(session, self._writer(session), self._clock).revert(
                actor, entry_id, network or NetworkMeta(actor.ip_address, actor.user_agent)
            )
            return AuditEntryRecord.from_model(entry)

    # -------------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------------

    def create_backup(self, actor: Actor, options: BackupOptions | None = None) -> BackupRecord:
        return self._lifecycle.create(actor, options or BackupOptions())

    def validate_backup(self, actor: Actor, backup_id: UUID | str) -> bool:
        return self._lifecycle.validate(actor, backup_id).valid

    def restore_backup(
        self,
        actor: Actor,
        backup_id: UUID | str,
        options: RestoreOptions | None = None,
    ) -> RestoreSummary:
        return self._lifecycle.restore(actor, backup_id, options)

    def delete_backup(self, actor: Actor, backup_id: UUID | str, superseded: bool = False) -> None:
        self._lifecycle.delete(actor, backup_id, superseded=superseded)

    def download_backup(self, actor: Actor, backup_id: UUID | str) -> BackupDownload:
        return self._lifecycle.download(actor, backup_id)

    def get_backup(self, actor: Actor, backup_id: UUID | str) -> BackupRecord:
        return self._lifecycle.get(actor, backup_id)

    def list_backups(
        self,
        actor: Actor,
        status: BackupStatus | str | None = None,
        backup_type: BackupType | str | None = None,
        limit: int | None = None,
    ) -> list[BackupRecord]:
        return self._lifecycle.list_backups(actor, status, backup_type, limit)

    def backup_health(self, actor: Actor, now: datetime | None = None) -> BackupHealth:
        return self._lifecycle.health(actor, now)

    def get_backup_config(self, actor: Actor) -> BackupConfigView:
        require_permission(actor, Permission.BACKUP_CONFIG_READ)
        with session_scope(self._session_factory) as session:
            return self._config_service(session).get()

    def update_backup_config(
        self,
        actor: Actor,
        update: BackupConfigUpdate,
        network: NetworkMeta | None = None,
    ) -> BackupConfigView:
        require_permission(actor, Permission.BACKUP_CONFIG_WRITE)
        with self._unit_of_work() as session:
            return self._config_service(session).update(
                actor, update, self._writer(session), network
            )

    def _config_service(self, session: Session) -> BackupConfigService:
        return BackupConfigService(
            session, str(self._lifecycle.storage.base_dir), self._clock
        )
