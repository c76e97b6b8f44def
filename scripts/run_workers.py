#!/usr/bin/env python3
"""Dev entrypoint for running delivery workers.

Usage:
    # One maintenance pass and one cycle on every lane
    python scripts/run_workers.py --once

    # Per-lane worker threads until Ctrl+C
    python scripts/run_workers.py --loop

    # Only the webhook lane, polling every 2 seconds
    python scripts/run_workers.py --loop --lane webhook-delivery --interval 2

    # Stop after 5 maintenance passes (for testing)
    python scripts/run_workers.py --loop --max-iterations 5

    # Print job counts per lane
    python scripts/run_workers.py --stats

Environment variables:
    DATABASE_URL: Job store (PostgreSQL in production, SQLite for development)
    WORKER_BATCH_SIZE: Jobs claimed per cycle (default: 50)
    WORKER_POLL_INTERVAL_SECONDS: Seconds between idle polls (default: 5)
    WORKER_CONCURRENCY: Default concurrency of new lanes (default: 5)
    RETRY_CLIENT_ERRORS: Retry 4xx responses other than 408/429 (default: false)
    EXPO_ACCESS_TOKEN, TWILIO_*, SMTP_*, WEB_PUSH_GATEWAY_URL: channel providers;
        channels without credentials deliver in simulated mode
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.services.errors import InvalidLane
from app.workers import (
    RunnerResult,
    configure_worker_logging,
    lane_stats,
    run_worker_loop,
    run_worker_once,
)

STAT_COLUMNS = ("waiting", "active", "delayed", "completed", "failed")


def print_run_summary(result: RunnerResult) -> None:
    maintenance = result.maintenance
    print("\n--- Delivery Run ---")
    print(
        f"Maintenance: {maintenance.promoted} promoted, "
        f"{maintenance.reclaimed} reclaimed, {maintenance.failed} failed on reclaim"
    )
    for lane, lane_result in result.lane_results.items():
        print(
            f"  {lane:<18} delivered={lane_result.processed_count} "
            f"failed={lane_result.failed_count} skipped={lane_result.skipped_count}"
        )
    print(f"Delivered {result.total_processed}, failed attempts {result.total_failed}")
    for err in result.errors:
        print(f"  ! {err}")


def print_lane_stats() -> None:
    print(f"{'lane':<18}" + "".join(f"{column:>11}" for column in STAT_COLUMNS))
    for lane, counts in lane_stats().items():
        print(
            f"{lane:<18}"
            + "".join(f"{getattr(counts, column):>11}" for column in STAT_COLUMNS)
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run delivery workers for webhook and notification lanes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--once", action="store_true", help="Run the lanes once and exit")
    mode.add_argument("--loop", action="store_true", help="Run lane workers until stopped")
    mode.add_argument("--stats", action="store_true", help="Print job counts per lane")

    parser.add_argument(
        "--lane",
        dest="lanes",
        action="append",
        metavar="NAME",
        help="Restrict to a lane (repeatable; default: every registered lane)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between maintenance passes (loop mode only)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        help="Maximum maintenance passes before stopping (loop mode only)",
    )
    parser.add_argument("--batch-size", type=int, help="Jobs to claim per cycle")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="DEBUG logging")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Warnings only")
    return parser


def main() -> int:
    """Main entrypoint for worker runner."""
    args = build_parser().parse_args()

    if args.verbose:
        configure_worker_logging(logging.DEBUG)
    elif args.quiet:
        configure_worker_logging(logging.WARNING)
    else:
        configure_worker_logging(logging.INFO)

    logger = logging.getLogger(__name__)

    try:
        if args.stats:
            print_lane_stats()
            return 0

        if args.once:
            result = run_worker_once(batch_size=args.batch_size, lanes=args.lanes)
            print_run_summary(result)
            return 1 if result.errors else 0

        logger.info("Starting worker loop (Ctrl+C to stop)...")
        run_worker_loop(
            interval_seconds=args.interval,
            max_iterations=args.max_iterations,
            batch_size=args.batch_size,
            lanes=args.lanes,
        )
        return 0

    except InvalidLane as e:
        logger.error(str(e))
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
