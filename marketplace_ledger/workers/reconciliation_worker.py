"""
Reconciliation background worker.

Runs a reconciliation pass on a fixed interval, each pass covering the
configured look-back window up to now.
"""
import argparse
import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from marketplace_ledger.config import get_settings
from marketplace_ledger.core.reconciliation import ReconciliationReport
from marketplace_ledger.core.service import LedgerService
from marketplace_ledger.database.connection import close_db, init_db
from marketplace_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(
    service: LedgerService, lookback: timedelta
) -> ReconciliationReport:
    """
    Run one pass over ``[now - lookback, now]``.

    Args:
        service: Ledger service to reconcile through
        lookback: Window length

    Returns:
        ReconciliationReport: Pass result
    """
    until = datetime.now(timezone.utc)
    report = await service.reconcile(since=until - lookback, until=until)

    if not report.is_clean:
        logger.warning(
            "reconciliation_discrepancies_detected",
            missing_in_ledger=report.count("missing_in_ledger"),
            amount_mismatch=report.count("amount_mismatch"),
            unknown_order=report.count("unknown_order"),
            status_mismatch=report.count("status_mismatch"),
            repair_conflict=report.count("repair_conflict"),
            repaired=report.repaired,
        )
    return report


async def start_reconciliation_worker(
    service: Optional[LedgerService] = None,
    interval_seconds: Optional[int] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Start the reconciliation worker.

    Runs until SIGINT/SIGTERM or until ``stop_event`` is set.

    Args:
        service: Ledger service (default: wired from settings)
        interval_seconds: Seconds between passes (default: from settings)
        stop_event: External shutdown trigger
    """
    settings = get_settings()
    owns_database = service is None
    if owns_database:
        service = LedgerService.from_settings(settings)
        await init_db()
    interval = interval_seconds or settings.reconciliation_interval_seconds
    lookback = timedelta(hours=settings.reconciliation_lookback_hours)
    stop = stop_event or asyncio.Event()

    logger.info(
        "reconciliation_worker_starting",
        interval_seconds=interval,
        lookback_hours=settings.reconciliation_lookback_hours,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stop.set()

    if stop_event is None:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop.is_set():
            try:
                await run_reconciliation(service, lookback)
            except Exception as e:
                # Keep running; the next pass covers the same window again.
                logger.error("reconciliation_execution_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await service.close()
        if owns_database:
            await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Ledger reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between reconciliation passes"
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
