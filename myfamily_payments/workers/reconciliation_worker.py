"""
Ledger reconciliation background worker.

Runs the fund balance check daily at a scheduled hour (e.g., 2 AM).
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from myfamily_payments.core.reconciliation import LedgerReconciler
from myfamily_payments.database.connection import close_db
from myfamily_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(
    reconciler: Optional[LedgerReconciler] = None,
) -> Dict[str, Any]:
    """Check every family fund once and report mismatches."""
    logger.info("daily_reconciliation_started")

    try:
        reconciler = reconciler or LedgerReconciler()
        result = await reconciler.reconcile_all()
    except Exception as e:
        logger.error("daily_reconciliation_failed", error=str(e))
        raise

    if result["mismatched_funds"]:
        logger.warning(
            "reconciliation_discrepancies_detected",
            mismatched_funds=result["mismatched_funds"],
            fund_ids=[d["fund_id"] for d in result["discrepancies"]],
        )

    logger.info(
        "daily_reconciliation_completed",
        funds_checked=result["funds_checked"],
        mismatched_funds=result["mismatched_funds"],
    )
    return result


def calculate_next_run_time(target_hour: int = 2, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format)
        now: Current time (defaults to the local clock)

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # Past today's slot: run tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


async def start_reconciliation_worker(target_hour: int = 2) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day to run (default: 2 AM)
    """
    setup_logging()

    logger.info("reconciliation_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    reconciler = LedgerReconciler()

    try:
        while running:
            seconds_until = calculate_next_run_time(target_hour)

            # Sleep in short slices so a shutdown signal is noticed
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_daily_reconciliation(reconciler)
            except Exception as e:
                # Keep the schedule alive; the next run retries
                logger.error("reconciliation_execution_error", error=str(e))

    finally:
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Command-line entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Family fund reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=2, help="Hour of day to run reconciliation (0-23)"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
