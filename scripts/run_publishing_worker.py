#!/usr/bin/env python3
"""
Publishing Worker - Dispatches the publishing queue outside the API process.

Run with: python scripts/run_publishing_worker.py

Use this when API replicas run with RUN_QUEUE_PROCESSOR=false. Queue rows are
durable, so if the worker dies mid-dispatch the item stays in "processing"
until the stale sweep on the next start puts it back to "pending".

Only one worker should run at a time: breakers and rate-limit windows are
held in process memory (and written through to the database).

Usage:
    python scripts/run_publishing_worker.py                 # Default interval
    python scripts/run_publishing_worker.py --interval 10   # Tick every 10s
    python scripts/run_publishing_worker.py --once          # Single tick, then exit
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from publisher.core.config import settings  # noqa: E402
from publisher.core.errors import init_sentry  # noqa: E402
from publisher.core.logging_config import get_logger  # noqa: E402
from publisher.db import create_db_and_tables  # noqa: E402
from publisher.main import build_queue_service  # noqa: E402

logger = get_logger("publishing_worker")


async def run_worker(interval: int, once: bool = False) -> None:
    """
    Run the queue processor until SIGINT/SIGTERM.

    Args:
        interval: Seconds between processing ticks
        once: Run a single tick and return
    """
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()
    queue = build_queue_service()

    # Requeue items left in "processing" by a previous crash
    recovered = await queue.recover_stale_items()
    if recovered:
        logger.info("reset stale items from previous run", count=recovered)
    logger.info("queue stats", **(await queue.get_stats()))

    if once:
        result = await queue.process_pending_items()
        logger.info("single tick complete", **result.to_dict())
        return

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    queue.start_processing(interval)
    logger.info("publishing worker started, press Ctrl+C to shut down gracefully", interval_seconds=interval)

    try:
        await shutdown.wait()
        logger.info("shutdown requested, returning in-flight item to the queue")
    finally:
        await queue.shutdown()
        totals = queue.metrics.get_all_metrics()["totals"]
        logger.info("publishing worker stopped", **totals)


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Publishing Worker - Dispatch queued publish jobs")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.QUEUE_INTERVAL_SECONDS,
        help=f"Seconds between ticks (default: {settings.QUEUE_INTERVAL_SECONDS})",
    )
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args()

    print(f"[Worker] Starting at {datetime.now(timezone.utc).isoformat()}")
    asyncio.run(run_worker(args.interval, once=args.once))
    print("[Worker] Cleanup complete")


if __name__ == "__main__":
    main()
