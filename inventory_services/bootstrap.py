"""
inventory_services.bootstrap -- Central DI container for the integrity core.

Responsibility:
    Creates every process-wide singleton exactly once and wires them
    together: signer, cipher, audit chain lock, backup lock, artifact
    storage, lifecycle manager, retention scheduler, and the
    IntegrityService facade.  No service constructs these itself.

Invariants enforced:
    - Single-instance lifecycle: one AuditChainLock and one BackupLock per
      process; every component that needs them receives the same object.
    - Startup refuses to continue without signing and encryption secrets
      (MissingSecretError from inventory_config / AuditSigner / ArtifactCipher).
    - Tables, well-known sequence counters, and ORM immutability listeners
      exist before the first request is served.

Usage:
    runtime = build_runtime()
    runtime.service.create_backup(actor, BackupOptions())
    runtime.scheduler.start()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from inventory_config import IntegritySettings, get_active_settings
from inventory_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from inventory_kernel.db.immutability import register_immutability_listeners
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.logging_config import configure_logging, get_logger
from inventory_kernel.services.audit_writer import (
    AuditChainLock,
    AuditFailureCounter,
    DeferredAuditQueue,
)
from inventory_kernel.services.sequence_service import SequenceService
from inventory_kernel.utils.signing import AuditSigner

from inventory_backup.services.config_service import BackupConfigService
from inventory_backup.services.encryption import ArtifactCipher
from inventory_backup.services.lifecycle import BackupLifecycleManager
from inventory_backup.services.locks import BackupLock
from inventory_backup.services.scheduler import RetentionScheduler
from inventory_backup.services.storage import LocalArtifactStorage

from inventory_services.integrity_service import IntegrityService

logger = get_logger("services.bootstrap")


@dataclass(frozen=True)
class IntegrityRuntime:
    settings: IntegritySettings
    session_factory: sessionmaker[Session]
    clock: Clock
    signer: AuditSigner
    cipher: ArtifactCipher
    chain_lock: AuditChainLock
    backup_lock: BackupLock
    failure_counter: AuditFailureCounter
    storage: LocalArtifactStorage
    deferred_audit: DeferredAuditQueue
    lifecycle: BackupLifecycleManager
    scheduler: RetentionScheduler
    service: IntegrityService


def build_runtime(
    settings: IntegritySettings | None = None,
    clock: Clock | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> IntegrityRuntime:
    """
    Wire the integrity core.

    Args:
        settings: Defaults to ``get_active_settings()``.
        clock: Defaults to SystemClock; tests inject a DeterministicClock.
        session_factory: Defaults to the module-level engine built from
            ``settings.database_url``.
    """
    settings = settings or get_active_settings()
    clock = clock or SystemClock()
    configure_logging(
        level=logging.getLevelName(settings.log_level.upper()),
        json_output=settings.log_json,
    )

    # Secrets are checked before any database work
    signer = AuditSigner(settings.audit_signing_secret)
    cipher = ArtifactCipher(settings.backup_encryption_secret, settings.pbkdf2_iterations)

    if session_factory is None:
        init_engine_from_url(settings.database_url)
        session_factory = get_session_factory()
    create_tables(session_factory.kw["bind"])
    register_immutability_listeners()

    with session_scope(session_factory) as session:
        SequenceService(session).initialize_sequences()
        storage_path = BackupConfigService(
            session, settings.backup_storage_path, clock
        ).get().storage_path

    chain_lock = AuditChainLock(timeout_seconds=settings.audit_lock_timeout_seconds)
    backup_lock = BackupLock(timeout_seconds=settings.lock_timeout_seconds)
    failure_counter = AuditFailureCounter()
    storage = LocalArtifactStorage(storage_path)

    lifecycle = BackupLifecycleManager(
        session_factory=session_factory,
        storage=storage,
        cipher=cipher,
        signer=signer,
        chain_lock=chain_lock,
        backup_lock=backup_lock,
        clock=clock,
        restore_timeout_seconds=settings.restore_timeout_seconds,
        max_storage_bytes=settings.max_storage_bytes,
        failure_counter=failure_counter,
    )
    scheduler = RetentionScheduler(
        session_factory=session_factory,
        lifecycle=lifecycle,
        clock=clock,
        tick_interval_seconds=settings.scheduler_interval_seconds,
    )
    deferred_audit = DeferredAuditQueue(
        session_factory, signer, chain_lock, clock, failure_counter
    )
    service = IntegrityService(
        session_factory=session_factory,
        signer=signer,
        chain_lock=chain_lock,
        lifecycle=lifecycle,
        deferred_audit=deferred_audit,
        clock=clock,
        failure_counter=failure_counter,
    )

    logger.info(
        "integrity_core_started",
        extra={
            "storage_path": str(storage.base_dir),
            "settings_fingerprint": settings.fingerprint(),
        },
    )
    return IntegrityRuntime(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        signer=signer,
        cipher=cipher,
        chain_lock=chain_lock,
        backup_lock=backup_lock,
        failure_counter=failure_counter,
        storage=storage,
        deferred_audit=deferred_audit,
        lifecycle=lifecycle,
        scheduler=scheduler,
        service=service,
    )
