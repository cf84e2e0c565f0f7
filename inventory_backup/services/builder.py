"""
ArtifactBuilder -- turns a backup selection into artifact bytes.

Contract:
    ``build(options)`` reads the selected tables inside the caller's session,
    serializes them in the requested format, and encrypts the result when
    asked.  It never writes to storage and never mutates the database.

Selection rules:
    - inventory_items are always included.
    - users, settings, audit_entries follow the include_* flags.
    - The optional date range filters inventory items (created_at) and audit
      entries (occurred_at); users and settings are always complete.
    - users.password_hash is never read.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock, as_utc
from inventory_kernel.logging_config import get_logger

from inventory_backup.domain.types import BackupFormat, BackupOptions
from inventory_backup.services import serializers
from inventory_backup.services.encryption import ArtifactCipher
from inventory_backup.services.tables import (
    AUDIT_ENTRIES,
    INVENTORY_ITEMS,
    SETTINGS,
    USERS,
    TableSpec,
    export_row,
)

logger = get_logger("backup.builder")

FORMAT_VERSION = 1


@dataclass(frozen=True)
class BuiltArtifact:
    data: bytes
    record_count: int
    plaintext_size: int
    encrypted: bool


class ArtifactBuilder:
    def __init__(
        self,
        session: Session,
        cipher: ArtifactCipher,
        clock: Clock | None = None,
    ):
        self._session = session
        self._cipher = cipher
        self._clock = clock or SystemClock()

    def _rows(
        self,
        spec: TableSpec,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> list[dict[str, Any]]:
        # Column-level select keeps excluded columns out of the query entirely
        columns = [getattr(spec.model, name) for name in spec.column_names]
        stmt = select(*columns)
        if spec.date_column is not None:
            date_attr = getattr(spec.model, spec.date_column)
            if date_from is not None:
                stmt = stmt.where(date_attr >= as_utc(date_from))
            if date_to is not None:
                stmt = stmt.where(date_attr <= as_utc(date_to))
            stmt = stmt.order_by(date_attr, spec.model.id)
        else:
            stmt = stmt.order_by(spec.model.id)

        rows = []
        for row in self._session.execute(stmt):
            rows.append(export_row(row, spec))
        return rows

    def collect(self, options: BackupOptions) -> dict[str, Any]:
        """Read the selection into an export payload."""
        payload: dict[str, Any] = {
            INVENTORY_ITEMS.key: self._rows(INVENTORY_ITEMS, options.date_from, options.date_to),
        }
        if options.include_user_data:
            payload[USERS.key] = self._rows(USERS)
        if options.include_settings:
            payload[SETTINGS.key] = self._rows(SETTINGS)
        if options.include_audit_logs:
            payload[AUDIT_ENTRIES.key] = self._rows(
                AUDIT_ENTRIES, options.date_from, options.date_to
            )

        counts = {key: len(rows) for key, rows in payload.items()}
        payload["metadata"] = {
            "format_version": FORMAT_VERSION,
            "created_at": as_utc(self._clock.now()).isoformat(timespec="microseconds"),
            "backup_type": options.type.value,
            "format": options.format.value,
            "include_audit_logs": options.include_audit_logs,
            "include_user_data": options.include_user_data,
            "include_settings": options.include_settings,
            "date_from": as_utc(options.date_from).isoformat() if options.date_from else None,
            "date_to": as_utc(options.date_to).isoformat() if options.date_to else None,
            "record_counts": counts,
            "record_count": sum(counts.values()),
        }
        return payload

    def build(self, options: BackupOptions) -> BuiltArtifact:
        payload = self.collect(options)
        plaintext = serializers.serialize(payload, options.format)
        data = (
            self._cipher.encrypt(plaintext, options.passphrase)
            if options.encrypt
            else plaintext
        )
        record_count = payload["metadata"]["record_count"]
        logger.info(
            "artifact_built",
            extra={
                "format": options.format.value,
                "record_count": record_count,
                "plaintext_size": len(plaintext),
                "size": len(data),
                "encrypted": options.encrypt,
            },
        )
        return BuiltArtifact(
            data=data,
            record_count=record_count,
            plaintext_size=len(plaintext),
            encrypted=options.encrypt,
        )

    def parse(
        self,
        data: bytes,
        fmt: BackupFormat,
        encrypted: bool,
        passphrase: str | None = None,
    ) -> dict[str, Any]:
        """
        Stored artifact bytes -> payload.

        Raises:
            DecryptionError: wrong key/passphrase or tampered ciphertext.
            ValueError: the plaintext is not a well-formed artifact.
        """
        plaintext = self._cipher.decrypt(data, passphrase) if encrypted else data
        return serializers.parse(plaintext, fmt)
