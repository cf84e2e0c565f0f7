"""ORM models for backup metadata and configuration."""

from inventory_backup.models.backup import Backup, BackupConfig

__all__ = ["Backup", "BackupConfig"]
