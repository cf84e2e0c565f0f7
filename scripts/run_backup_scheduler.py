#!/usr/bin/env python3
"""
Run the automatic backup and retention scheduler.

``--once`` runs a single tick and prints its report (for cron);
otherwise the scheduler thread runs until SIGINT/SIGTERM.

Usage:
    python3 scripts/run_backup_scheduler.py --once
    python3 scripts/run_backup_scheduler.py --interval 900
"""

import argparse
import signal
import sys
import threading

from inventory_services import build_runtime


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Automatic backups, validation, and retention")
    p.add_argument("--once", action="store_true", help="Run one tick and exit")
    p.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between ticks (default: SCHEDULER_INTERVAL_SECONDS setting)",
    )
    return p.parse_args()


def main() -> int:
    args = _parse_args()
    runtime = build_runtime()
    scheduler = runtime.scheduler
    if args.interval is not None:
        scheduler.tick_interval_seconds = args.interval

    if args.once:
        report = scheduler.tick()
        print(
            f"created={len(report.created)} validated={len(report.validated)} "
            f"corrupted={len(report.corrupted)} pruned={len(report.pruned)} "
            f"errors={report.errors}"
        )
        return 1 if report.errors else 0

    done = threading.Event()

    def _shutdown(signum, frame):
        print(f"Received signal {signum}, stopping scheduler...")
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    scheduler.start()
    print("Scheduler running; press Ctrl+C to stop.")
    done.wait()
    scheduler.stop()
    runtime.service.flush_deferred_audit()
    return 0


if __name__ == "__main__":
    sys.exit(main())
