"""
BackupConfigService -- the singleton schedule and retention configuration.

Contract:
    ``get()`` returns the single BackupConfig row, creating it with defaults
    on first use.  ``update(actor, changes)`` is ADMIN-only and records a
    critical UPDATE entry on the Settings entity in the same transaction.

Non-goals:
    - Does NOT commit; callers run it inside audit_unit_of_work.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_kernel.domain.audit import AuditAction, AuditEntityType, NetworkMeta
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.roles import Actor, Permission, require_permission
from inventory_kernel.logging_config import get_logger
from inventory_kernel.services.audit_writer import AuditChainWriter

from inventory_backup.domain.types import (
    BackupConfigUpdate,
    BackupConfigView,
    RetentionPolicy,
)
from inventory_backup.models.backup import BackupConfig

logger = get_logger("backup.config")

CONFIG_ENTITY_ID = "backup-config"

_AUDITED_FIELDS = (
    "enabled",
    "schedule_time",
    "formats",
    "include_audit_logs",
    "retention_daily_days",
    "retention_weekly_weeks",
    "retention_monthly_months",
    "storage_path",
)


def _snapshot(config: BackupConfig) -> dict:
    return {name: getattr(config, name) for name in _AUDITED_FIELDS}


class BackupConfigService:
    def __init__(
        self,
        session: Session,
        default_storage_path: str,
        clock: Clock | None = None,
    ):
        self._session = session
        self._default_storage_path = default_storage_path
        self._clock = clock or SystemClock()

    def get_model(self) -> BackupConfig:
        config = self._session.execute(
            select(BackupConfig).order_by(BackupConfig.updated_at).limit(1)
        ).scalar_one_or_none()
        if config is None:
            config = BackupConfig(
                enabled=True,
                schedule_time="02:00",
                formats=["JSON"],
                include_audit_logs=True,
                retention_daily_days=30,
                retention_weekly_weeks=12,
                retention_monthly_months=12,
                storage_path=self._default_storage_path,
            )
            self._session.add(config)
            self._session.flush()
            logger.info("backup_config_initialized", extra={"storage_path": config.storage_path})
        return config

    def get(self) -> BackupConfigView:
        return BackupConfigView.from_model(self.get_model())

    def update(
        self,
        actor: Actor,
        update: BackupConfigUpdate,
        writer: AuditChainWriter,
        network: NetworkMeta | None = None,
    ) -> BackupConfigView:
        require_permission(actor, Permission.BACKUP_CONFIG_WRITE)
        config = self.get_model()
        before = _snapshot(config)

        changes = update.changes()
        if "formats" in changes:
            changes["formats"] = [f.value for f in changes["formats"]]
        # Validate the combined retention windows before touching the row
        RetentionPolicy(
            daily_days=changes.get("retention_daily_days", config.retention_daily_days),
            weekly_weeks=changes.get("retention_weekly_weeks", config.retention_weekly_weeks),
            monthly_months=changes.get("retention_monthly_months", config.retention_monthly_months),
        )

        for name, value in changes.items():
            setattr(config, name, value)
        config.updated_at = self._clock.now()
        config.updated_by = actor.actor_id
        self._session.flush()

        writer.record(
            actor.actor_id,
            AuditAction.UPDATE,
            AuditEntityType.SETTINGS,
            CONFIG_ENTITY_ID,
            before=before,
            after=_snapshot(config),
            network=network or NetworkMeta(actor.ip_address, actor.user_agent),
        )
        logger.info(
            "backup_config_updated",
            extra={"actor_id": actor.actor_id, "fields": sorted(changes)},
        )
        return BackupConfigView.from_model(config)

    def mark_run(self) -> None:
        self.get_model().last_run_at = self._clock.now()
        self._session.flush()
