"""
Typed Exception Hierarchy for the Inventory Integrity Core.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the integrity core (API routes, the scheduler, operator scripts)
must tell a corrupted backup from a missing one, and a held lock from a
broken audit chain.  Matching on message text is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        manager.restore(backup_id, options, actor)
    except BackupCorruptedError as e:
        api_response(code=e.code, backup_id=e.backup_id)
    except BackupLockHeldError:
        retry_later()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    InventoryKernelError (base)
    |
    +-- ConfigurationError
    |   +-- MissingSecretError
    |
    +-- IntegrityError
    |   +-- AuditChainBrokenError
    |   +-- ChecksumMismatchError
    |   +-- BackupCorruptedError
    |   +-- DecryptionError
    |
    +-- ConcurrencyError
    |   +-- BackupLockHeldError
    |
    +-- StorageError
    |   +-- ArtifactWriteError
    |   +-- ArtifactMissingError
    |   +-- StorageQuotaExceededError
    |
    +-- ValidationError
    |   +-- InvalidBackupRequestError
    |   +-- InvalidAuditQueryError
    |   +-- InvalidConfigUpdateError
    |   +-- RevertNotAllowedError
    |
    +-- NotFoundError
    |   +-- BackupNotFoundError
    |   +-- AuditEntryNotFoundError
    |   +-- InventoryItemNotFoundError
    |
    +-- BackupStateError
    |   +-- InvalidStatusTransitionError
    |   +-- RetentionViolationError
    |   +-- RestoreTimeoutError
    |   +-- RestoreFailedError
    |
    +-- AuthorizationError
    |   +-- PermissionDeniedError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Configuration   | MISSING_SECRET              | Signing/encryption secret absent
----------------|-----------------------------|-----------------------------------------
Integrity       | AUDIT_CHAIN_BROKEN          | Signature or linkage mismatch
                | CHECKSUM_MISMATCH           | Stored artifact digest differs
                | BACKUP_CORRUPTED            | Backup is CORRUPTED, cannot be used
                | BACKUP_DECRYPT_FAILED       | Wrong key/passphrase or bad ciphertext
----------------|-----------------------------|-----------------------------------------
Concurrency     | BACKUP_LOCK_HELD            | Another create/restore is running
----------------|-----------------------------|-----------------------------------------
Storage         | ARTIFACT_WRITE_FAILED       | Artifact could not be persisted
                | ARTIFACT_MISSING            | Artifact absent from storage
                | STORAGE_QUOTA_EXCEEDED      | Backup storage almost full
----------------|-----------------------------|-----------------------------------------
Validation      | INVALID_BACKUP_REQUEST      | Malformed create/restore options
                | INVALID_AUDIT_QUERY         | Malformed filters or pagination
                | INVALID_CONFIG_UPDATE       | Malformed backup configuration
                | REVERT_NOT_ALLOWED          | Entry cannot be reverted
----------------|-----------------------------|-----------------------------------------
Not found       | BACKUP_NOT_FOUND            | No backup row with this id
                | AUDIT_ENTRY_NOT_FOUND       | No audit entry with this id
                | INVENTORY_ITEM_NOT_FOUND    | No inventory item with this id
----------------|-----------------------------|-----------------------------------------
Backup state    | INVALID_STATUS_TRANSITION   | Lifecycle transition not permitted
                | RETENTION_VIOLATION         | Delete inside a retention window
                | RESTORE_TIMEOUT             | Restore exceeded its time budget
                | RESTORE_FAILED              | Restore transaction rolled back
----------------|-----------------------------|-----------------------------------------
Authorization   | PERMISSION_DENIED           | Actor role lacks the permission
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | UPDATE/DELETE on an append-only row

===============================================================================
HANDLING PATTERNS
===============================================================================

- ConfigurationError   -> fatal at startup, do not serve requests
- IntegrityError       -> alert, never auto-correct
- ConcurrencyError     -> caller retries later (never silently queued)
- StorageError         -> backup marked FAILED, caller may retry
- ValidationError      -> reject the request, nothing was mutated
- NotFoundError        -> absence, distinct from corruption

===============================================================================
"""


class InventoryKernelError(Exception):
    """
    Base exception for all integrity core errors.

    All subclasses define a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "INVENTORY_KERNEL_ERROR"
    retryable: bool = False


# Configuration


class ConfigurationError(InventoryKernelError):
    """Base exception for configuration errors (fatal at startup)."""

    code: str = "CONFIGURATION_ERROR"


class MissingSecretError(ConfigurationError):
    """A required secret (signing or encryption) is absent or empty."""

    code: str = "MISSING_SECRET"

    def __init__(self, secret_name: str):
        self.secret_name = secret_name
        super().__init__(
            f"Required secret {secret_name} is not configured; refusing to start"
        )


# Integrity


class IntegrityError(InventoryKernelError):
    """Base exception for tamper or corruption evidence."""

    code: str = "INTEGRITY_ERROR"


class AuditChainBrokenError(IntegrityError):
    """The audit chain failed verification."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, first_broken_at: int, reason: str):
        self.first_broken_at = first_broken_at
        self.reason = reason
        super().__init__(
            f"Audit chain broken at seq {first_broken_at}: {reason}"
        )


class ChecksumMismatchError(IntegrityError):
    """Stored artifact bytes do not match the recorded checksum."""

    code: str = "CHECKSUM_MISMATCH"

    def __init__(self, backup_id: str, expected: str, actual: str):
        self.backup_id = backup_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for backup {backup_id}: "
            f"expected {expected[:16]}..., got {actual[:16]}..."
        )


class BackupCorruptedError(IntegrityError):
    """The backup is CORRUPTED and must never be used for restore."""

    code: str = "BACKUP_CORRUPTED"

    def __init__(self, backup_id: str, reason: str):
        self.backup_id = backup_id
        self.reason = reason
        super().__init__(f"Backup {backup_id} is corrupted: {reason}")


class DecryptionError(IntegrityError):
    """Encrypted artifact could not be authenticated or decrypted."""

    code: str = "BACKUP_DECRYPT_FAILED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to decrypt backup artifact: {reason}")


# Concurrency


class ConcurrencyError(InventoryKernelError):
    """Base exception for lock contention."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class BackupLockHeldError(ConcurrencyError):
    """Another create/restore operation holds the global backup lock."""

    code: str = "BACKUP_LOCK_HELD"

    def __init__(self, lock_name: str, operation: str, holder: str | None = None):
        self.lock_name = lock_name
        self.operation = operation
        self.holder = holder
        super().__init__(
            f"Cannot {operation}: lock '{lock_name}' is held"
            + (f" by {holder}" if holder else "")
        )


# Storage


class StorageError(InventoryKernelError):
    """Base exception for artifact storage failures."""

    code: str = "STORAGE_ERROR"
    retryable: bool = True


class ArtifactWriteError(StorageError):
    """An artifact could not be written to storage."""

    code: str = "ARTIFACT_WRITE_FAILED"

    def __init__(self, filename: str, reason: str):
        self.filename = filename
        self.reason = reason
        super().__init__(f"Failed to write artifact {filename}: {reason}")


class ArtifactMissingError(StorageError):
    """An artifact expected in storage is absent."""

    code: str = "ARTIFACT_MISSING"
    retryable: bool = False

    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Backup artifact not found in storage: {filename}")


class StorageQuotaExceededError(StorageError):
    """Backup storage usage is above the allowed threshold."""

    code: str = "STORAGE_QUOTA_EXCEEDED"

    def __init__(self, used_bytes: int, limit_bytes: int):
        self.used_bytes = used_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Backup storage almost full: {used_bytes} of {limit_bytes} bytes used"
        )


# Validation


class ValidationError(InventoryKernelError):
    """Base exception for malformed requests (rejected before mutation)."""

    code: str = "VALIDATION_ERROR"


class InvalidBackupRequestError(ValidationError):
    """Backup create/restore options are malformed."""

    code: str = "INVALID_BACKUP_REQUEST"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid backup request: {reason}")


class InvalidAuditQueryError(ValidationError):
    """Audit query filters or pagination are malformed."""

    code: str = "INVALID_AUDIT_QUERY"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid audit query: {reason}")


class InvalidConfigUpdateError(ValidationError):
    """A backup configuration update is malformed."""

    code: str = "INVALID_CONFIG_UPDATE"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid value for {field}: {reason}")


class RevertNotAllowedError(ValidationError):
    """The audit entry cannot be reverted."""

    code: str = "REVERT_NOT_ALLOWED"

    def __init__(self, entry_id: str, reason: str):
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"Cannot revert audit entry {entry_id}: {reason}")


# Not found


class NotFoundError(InventoryKernelError):
    """Base exception for absent records (distinct from corruption)."""

    code: str = "NOT_FOUND"


class BackupNotFoundError(NotFoundError):
    """Backup with given ID was not found."""

    code: str = "BACKUP_NOT_FOUND"

    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"Backup not found: {backup_id}")


class AuditEntryNotFoundError(NotFoundError):
    """Audit entry with given ID was not found."""

    code: str = "AUDIT_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Audit entry not found: {entry_id}")


class InventoryItemNotFoundError(NotFoundError):
    """Inventory item with given ID was not found."""

    code: str = "INVENTORY_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Inventory item not found: {item_id}")


# Backup state


class BackupStateError(InventoryKernelError):
    """Base exception for backup lifecycle violations."""

    code: str = "BACKUP_STATE_ERROR"


class InvalidStatusTransitionError(BackupStateError):
    """A backup status transition is not permitted by the lifecycle."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, backup_id: str, from_status: str, to_status: str):
        self.backup_id = backup_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Backup {backup_id} cannot move from {from_status} to {to_status}"
        )


class RetentionViolationError(BackupStateError):
    """Delete refused: the backup is protected by a retention window."""

    code: str = "RETENTION_VIOLATION"

    def __init__(self, backup_id: str, window: str):
        self.backup_id = backup_id
        self.window = window
        super().__init__(
            f"Backup {backup_id} is protected by the {window} retention window"
        )


class RestoreTimeoutError(BackupStateError):
    """Restore exceeded its transaction time budget and was rolled back."""

    code: str = "RESTORE_TIMEOUT"
    retryable: bool = True

    def __init__(self, backup_id: str, timeout_seconds: float):
        self.backup_id = backup_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Restore of backup {backup_id} exceeded {timeout_seconds}s and was rolled back"
        )


class RestoreFailedError(BackupStateError):
    """Restore transaction failed and was rolled back."""

    code: str = "RESTORE_FAILED"

    def __init__(self, backup_id: str, reason: str, pre_restore_backup_id: str | None):
        self.backup_id = backup_id
        self.reason = reason
        self.pre_restore_backup_id = pre_restore_backup_id
        super().__init__(
            f"Restore of backup {backup_id} failed and was rolled back: {reason}"
        )


# Authorization


class AuthorizationError(InventoryKernelError):
    """Base exception for role-gate failures."""

    code: str = "AUTHORIZATION_ERROR"


class PermissionDeniedError(AuthorizationError):
    """Actor role lacks the permission for the requested operation."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, actor_id: str, role: str, permission: str):
        self.actor_id = actor_id
        self.role = role
        self.permission = permission
        super().__init__(
            f"Actor {actor_id} with role {role} lacks permission '{permission}'"
        )


# Immutability


class ImmutabilityError(InventoryKernelError):
    """Base exception for append-only violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted UPDATE or DELETE on an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
