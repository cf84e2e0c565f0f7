"""
BackupLock -- the single process-wide critical section for create/restore.

Contract:
    One instance is built at startup (inventory_services.bootstrap) and
    injected into the lifecycle manager.  ``hold(operation)`` either acquires
    immediately (or within ``timeout_seconds``) or raises
    BackupLockHeldError; it never queues callers silently.  The lock is
    released on completion and on failure.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from inventory_kernel.exceptions import BackupLockHeldError
from inventory_kernel.logging_config import get_logger

logger = get_logger("backup.lock")


class BackupLock:
    def __init__(self, name: str = "backup-restore", timeout_seconds: float = 0.0):
        self.name = name
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._holder: str | None = None

    @property
    def holder(self) -> str | None:
        return self._holder

    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, operation: str) -> Generator[None, None, None]:
        if self.timeout_seconds > 0:
            acquired = self._lock.acquire(timeout=self.timeout_seconds)
        else:
            acquired = self._lock.acquire(blocking=False)
        if not acquired:
            logger.warning(
                "backup_lock_contended",
                extra={"lock_name": self.name, "operation": operation, "holder": self._holder},
            )
            raise BackupLockHeldError(self.name, operation, self._holder)

        self._holder = operation
        logger.debug("backup_lock_acquired", extra={"lock_name": self.name, "operation": operation})
        try:
            yield
        finally:
            self._holder = None
            self._lock.release()
            logger.debug(
                "backup_lock_released", extra={"lock_name": self.name, "operation": operation}
            )
