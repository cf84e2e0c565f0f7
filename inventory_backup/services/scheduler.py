"""
RetentionScheduler -- In-process polling scheduler for automatic backups.

Contract:
    ``tick()`` loads the backup configuration and, when it is enabled:
        1. creates one AUTOMATIC backup per configured format once the
           day's schedule time has passed and no automatic backup of that
           format exists since then;
        2. validates every COMPLETED backup that was never validated;
        3. applies the retention plan through the lifecycle manager.

Architecture: inventory_backup/services.  Uses inventory_backup.domain.schedule
    for pure due-evaluation and the lifecycle manager for every mutation.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Graceful shutdown: the stop signal is checked between steps and the
      current step always completes.
    - One failing step never prevents the next one from running.

Non-goals:
    - NOT a distributed scheduler (no leader election).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.clock import Clock, SystemClock, as_utc
from inventory_kernel.domain.roles import SYSTEM_ACTOR, Actor
from inventory_kernel.exceptions import BackupLockHeldError
from inventory_kernel.logging_config import get_logger

from inventory_backup.domain.schedule import is_backup_due
from inventory_backup.domain.types import (
    BackupConfigView,
    BackupOptions,
    BackupStatus,
    BackupType,
)
from inventory_backup.services.config_service import BackupConfigService
from inventory_backup.services.lifecycle import BackupLifecycleManager

logger = get_logger("backup.scheduler")


@dataclass
class TickReport:
    created: list[UUID] = field(default_factory=list)
    validated: list[UUID] = field(default_factory=list)
    corrupted: list[UUID] = field(default_factory=list)
    pruned: list[UUID] = field(default_factory=list)
    errors: int = 0
    skipped: bool = False


class RetentionScheduler:
    """Runs automatic backups, validation, and retention on a fixed interval."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        lifecycle: BackupLifecycleManager,
        clock: Clock | None = None,
        actor: Actor = SYSTEM_ACTOR,
        tick_interval_seconds: float = 3600,
    ):
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._clock = clock or SystemClock()
        self._actor = actor
        self.tick_interval_seconds = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> TickReport:
        """Run one scheduling pass (public for testing and cron use)."""
        report = TickReport()
        now = self._clock.now()

        with session_scope(self._session_factory) as session:
            config = BackupConfigService(
                session, str(self._lifecycle.storage.base_dir), self._clock
            ).get()
        if not config.enabled:
            logger.info("scheduler_tick_skipped", extra={"reason": "disabled"})
            report.skipped = True
            return report

        self._create_due_backups(config, now, report)
        if not self._stop_event.is_set():
            self._validate_pending(report)
        if not self._stop_event.is_set():
            self._apply_retention(now, report)

        with session_scope(self._session_factory) as session:
            BackupConfigService(
                session, str(self._lifecycle.storage.base_dir), self._clock
            ).mark_run()

        logger.info(
            "scheduler_tick_completed",
            extra={
                "created_count": len(report.created),
                "validated_count": len(report.validated),
                "corrupted_count": len(report.corrupted),
                "pruned_count": len(report.pruned),
                "error_count": report.errors,
            },
        )
        return report

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="backup-retention-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self.tick_interval_seconds})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self.tick_interval_seconds)

    def _create_due_backups(
        self,
        config: BackupConfigView,
        now: datetime,
        report: TickReport,
    ) -> None:
        automatic = self._lifecycle.list_backups(self._actor, backup_type=BackupType.AUTOMATIC)
        for fmt in config.formats:
            if self._stop_event.is_set():
                break
            # FAILED attempts do not count, so the next tick retries
            attempts = [
                as_utc(b.created_at)
                for b in automatic
                if b.format == fmt and b.status != BackupStatus.FAILED
            ]
            last = max(attempts) if attempts else None
            if not is_backup_due(config.schedule_time, now, last):
                continue
            try:
                record = self._lifecycle.create(
                    self._actor,
                    BackupOptions(
                        format=fmt,
                        type=BackupType.AUTOMATIC,
                        include_audit_logs=config.include_audit_logs,
                    ),
                )
            except BackupLockHeldError:
                logger.warning("scheduled_backup_deferred", extra={"format": fmt.value})
                report.errors += 1
                continue
            except Exception:
                logger.exception("scheduled_backup_failed", extra={"format": fmt.value})
                report.errors += 1
                continue
            report.created.append(record.id)

    def _validate_pending(self, report: TickReport) -> None:
        pending = [
            b
            for b in self._lifecycle.list_backups(self._actor, status=BackupStatus.COMPLETED)
            if not b.validated
        ]
        for backup in pending:
            if self._stop_event.is_set():
                break
            try:
                result = self._lifecycle.validate(self._actor, backup.id)
            except Exception:
                logger.exception("scheduled_validation_failed", extra={"backup_id": str(backup.id)})
                report.errors += 1
                continue
            if result.valid:
                report.validated.append(backup.id)
            else:
                report.corrupted.append(backup.id)

    def _apply_retention(self, now: datetime, report: TickReport) -> None:
        try:
            report.pruned.extend(self._lifecycle.apply_retention(self._actor, now))
        except Exception:
            logger.exception("scheduled_retention_failed")
            report.errors += 1
