"""
ORM models for backup persistence.

Contract:
    Backup holds the metadata row of one artifact; BackupConfig is the
    singleton schedule/retention configuration read by the scheduler.

Architecture: inventory_backup/models.  Imports from inventory_kernel.db.base only.

Invariants enforced:
    - ``filename`` is UNIQUE.
    - Status transitions follow domain.types.ALLOWED_TRANSITIONS (ORM
      listener in inventory_kernel.db.immutability).
    - The metadata row is committed before the artifact write begins.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base, UTCDateTime


class Backup(Base):
    __tablename__ = "backups"

    __table_args__ = (
        Index("ix_backups_status", "status"),
        Index("ix_backups_type", "type"),
        Index("ix_backups_created_at", "created_at"),
    )

    filename: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    plaintext_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    include_audit_logs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    include_user_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    include_settings: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    date_range_from: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    date_range_to: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Backup {self.filename} {self.status}>"


class BackupConfig(Base):
    """Singleton row; the config service creates it with defaults on first read."""

    __tablename__ = "backup_configs"

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    schedule_time: Mapped[str] = mapped_column(String(5), nullable=False, default="02:00")
    formats: Mapped[list] = mapped_column(JSON, nullable=False, default=lambda: ["JSON"])
    include_audit_logs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    retention_daily_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    retention_weekly_weeks: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    retention_monthly_months: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<BackupConfig enabled={self.enabled} at={self.schedule_time}>"
