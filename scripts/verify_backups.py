#!/usr/bin/env python3
"""
Re-validate stored backups against their recorded checksums.

By default only COMPLETED backups that were never validated are checked;
``--all`` re-checks every COMPLETED backup.  A mismatch marks the backup
CORRUPTED (permanently) and is recorded in the audit trail.

Exit codes:
    0  every checked backup is intact
    2  at least one backup is corrupted
    3  the backup lock is held by another operation

Usage:
    python3 scripts/verify_backups.py [--all]
"""

import argparse
import sys

from inventory_backup.domain.types import BackupStatus
from inventory_kernel.domain.roles import SYSTEM_ACTOR
from inventory_kernel.exceptions import BackupLockHeldError
from inventory_services import build_runtime


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Validate stored backup artifacts")
    p.add_argument(
        "--all",
        action="store_true",
        help="Re-check every COMPLETED backup, not only unvalidated ones",
    )
    return p.parse_args()


def main() -> int:
    args = _parse_args()
    runtime = build_runtime()
    service = runtime.service

    backups = service.list_backups(SYSTEM_ACTOR, status=BackupStatus.COMPLETED)
    if not args.all:
        backups = [b for b in backups if not b.validated]

    corrupted = 0
    for backup in backups:
        try:
            valid = service.validate_backup(SYSTEM_ACTOR, backup.id)
        except BackupLockHeldError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 3
        status = "ok" if valid else "CORRUPTED"
        print(f"  {backup.filename:<60} {status}")
        if not valid:
            corrupted += 1

    print(f"Checked {len(backups)} backup(s), {corrupted} corrupted")
    return 2 if corrupted else 0


if __name__ == "__main__":
    sys.exit(main())
