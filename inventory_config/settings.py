"""
IntegritySettings -- the frozen runtime configuration of the integrity core.

Secrets are excluded from ``repr`` and from ``public_view()`` so that the
settings object can be logged safely.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, fields
from typing import Any

# Fields that must never appear in logs or fingerprints
SECRET_FIELDS = frozenset({"audit_signing_secret", "backup_encryption_secret"})


@dataclass(frozen=True)
class IntegritySettings:
    audit_signing_secret: str = field(repr=False)
    backup_encryption_secret: str = field(repr=False)
    database_url: str = "sqlite:///inventory.db"
    backup_storage_path: str = "./backups"
    restore_timeout_seconds: float = 300.0
    lock_timeout_seconds: float = 0.0
    audit_lock_timeout_seconds: float = 30.0
    scheduler_interval_seconds: float = 3600.0
    max_storage_bytes: int | None = None
    pbkdf2_iterations: int = 200_000
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self) -> None:
        if self.restore_timeout_seconds <= 0:
            raise ValueError("restore_timeout_seconds must be positive")
        if self.lock_timeout_seconds < 0:
            raise ValueError("lock_timeout_seconds must not be negative")
        if self.audit_lock_timeout_seconds <= 0:
            raise ValueError("audit_lock_timeout_seconds must be positive")
        if self.scheduler_interval_seconds <= 0:
            raise ValueError("scheduler_interval_seconds must be positive")
        if self.max_storage_bytes is not None and self.max_storage_bytes <= 0:
            raise ValueError("max_storage_bytes must be positive when set")
        if self.pbkdf2_iterations < 1000:
            raise ValueError("pbkdf2_iterations must be at least 1000")

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))

    def public_view(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in SECRET_FIELDS
        }

    def fingerprint(self) -> str:
        """SHA-256 over the non-secret settings, for change detection in logs."""
        canonical = json.dumps(self.public_view(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
