#!/usr/bin/env python3
"""
Verify the HMAC chain of the audit trail.

Walks audit entries in sequence order, recomputing every signature and
checking each entry's link to its predecessor.  Exits 0 when the chain is
intact and 2 when it is broken (the first broken sequence number is
printed), so the script can gate cron jobs and deploys.

Usage:
    python3 scripts/verify_audit_chain.py
    python3 scripts/verify_audit_chain.py --start-seq 1000 --end-seq 2000
    INVENTORY_CONFIG_FILE=config/prod.yaml python3 scripts/verify_audit_chain.py

Settings come from inventory_config (AUDIT_SIGNING_SECRET, DATABASE_URL, ...).
"""

import argparse
import sys

from inventory_services import build_runtime


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Verify the tamper-evident audit chain")
    p.add_argument("--start-seq", type=int, default=None, help="First sequence number to check")
    p.add_argument("--end-seq", type=int, default=None, help="Last sequence number to check")
    return p.parse_args()


def main() -> int:
    args = _parse_args()
    runtime = build_runtime()
    result = runtime.service.verify_audit_chain(args.start_seq, args.end_seq)

    if result.valid:
        print(f"OK: {result.checked} entries verified (last seq {result.last_seq})")
        return 0

    print(
        f"BROKEN at seq {result.first_broken_at}: {result.reason} "
        f"({result.checked} entries verified before the break)",
        file=sys.stderr,
    )
    return 2


if __name__ == "__main__":
    sys.exit(main())
