"""
BackupValidator -- checksum verification over stored artifacts.

Contract:
    ``compute_checksum(data)`` is the SHA-256 of the bytes as stored, i.e.
    after encryption, so the digest protects exactly what is on disk.
    ``validate(backup)`` re-reads the artifact, recomputes, and compares:

        match                      -> validated=True, validated_at=now
        mismatch / missing / junk  -> status=CORRUPTED, validated=False

Invariants enforced:
    - Idempotent: validating a good artifact again only refreshes
      validated_at; validating a CORRUPTED backup changes nothing.
    - CORRUPTED is permanent.  The validator is the only component that
      moves a backup to CORRUPTED.

Non-goals:
    - Does NOT commit; the lifecycle manager owns the transaction.
    - Does NOT decrypt; encrypted artifacts are checked by digest only.
"""

from __future__ import annotations

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.exceptions import ArtifactMissingError, InvalidBackupRequestError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.utils.hashing import sha256_hex

from inventory_backup.domain.types import BackupFormat, BackupStatus, ValidationReport
from inventory_backup.models.backup import Backup
from inventory_backup.services import serializers
from inventory_backup.services.encryption import is_encrypted
from inventory_backup.services.storage import LocalArtifactStorage

logger = get_logger("backup.validator")


def compute_checksum(data: bytes) -> str:
    return sha256_hex(data)


def structural_problem(data: bytes, fmt: BackupFormat, encrypted: bool) -> str | None:
    """Describe why stored bytes are not a well-formed artifact, or None."""
    if encrypted:
        return None if is_encrypted(data) else "encrypted artifact header missing"
    try:
        payload = serializers.parse(data, fmt)
    except ValueError as exc:
        return str(exc)
    if "inventory_items" not in payload and fmt is not BackupFormat.SQL:
        return "inventory section missing"
    return None


class BackupValidator:
    def __init__(
        self,
        storage: LocalArtifactStorage,
        clock: Clock | None = None,
    ):
        self._storage = storage
        self._clock = clock or SystemClock()

    def validate(self, backup: Backup) -> ValidationReport:
        status = BackupStatus(backup.status)
        if status == BackupStatus.CORRUPTED:
            return ValidationReport(
                backup_id=backup.id,
                valid=False,
                status=status,
                expected_checksum=backup.checksum,
                reason="backup is already marked corrupted",
            )
        if status != BackupStatus.COMPLETED:
            raise InvalidBackupRequestError(
                f"cannot validate backup {backup.id} in status {status.value}"
            )

        try:
            data = self._storage.read(backup.filename)
        except ArtifactMissingError:
            return self._mark_corrupted(backup, None, "artifact missing from storage")

        actual = compute_checksum(data)
        if actual != backup.checksum:
            return self._mark_corrupted(backup, actual, "checksum mismatch")

        problem = structural_problem(data, BackupFormat(backup.format), backup.encrypted)
        if problem is not None:
            return self._mark_corrupted(backup, actual, f"malformed artifact: {problem}")

        backup.validated = True
        backup.validated_at = self._clock.now()
        logger.info(
            "backup_validated",
            extra={"backup_id": str(backup.id), "artifact": backup.filename},
        )
        return ValidationReport(
            backup_id=backup.id,
            valid=True,
            status=BackupStatus.COMPLETED,
            expected_checksum=backup.checksum,
            actual_checksum=actual,
        )

    def _mark_corrupted(
        self,
        backup: Backup,
        actual: str | None,
        reason: str,
    ) -> ValidationReport:
        backup.status = BackupStatus.CORRUPTED.value
        backup.validated = False
        backup.error_message = reason
        logger.critical(
            "backup_corrupted",
            extra={
                "backup_id": str(backup.id),
                "artifact": backup.filename,
                "expected_checksum": backup.checksum,
                "actual_checksum": actual,
                "reason": reason,
            },
        )
        return ValidationReport(
            backup_id=backup.id,
            valid=False,
            status=BackupStatus.CORRUPTED,
            expected_checksum=backup.checksum,
            actual_checksum=actual,
            reason=reason,
        )
