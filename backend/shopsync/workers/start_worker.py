#!/usr/bin/env python3
"""Start the reconciliation worker as its own process.

WHAT:
    Runs the scheduled Shopify resync outside the API process, for
    deployments that set SYNC_ENABLED=false on the API.

USAGE:
    # From backend directory:
    python -m shopsync.workers.start_worker

    # Single pass and exit (cron-style):
    python -m shopsync.workers.start_worker --once
"""

import argparse
import asyncio
import logging
import sys

import httpx

from shopsync.database import build_engine, build_session_factory, create_tables
from shopsync.deps import get_settings
from shopsync.services.resilience import breaker_config_from_settings
from shopsync.services.shopify_client import SHOPIFY_HTTP_TIMEOUT_SECONDS
from shopsync.telemetry.sentry import init_sentry
from shopsync.workers.reconciliation_worker import ReconciliationWorker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


async def _run(once: bool) -> None:
    settings = get_settings()
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    engine = build_engine(settings.DATABASE_URL)
    create_tables(engine)
    async with httpx.AsyncClient(timeout=SHOPIFY_HTTP_TIMEOUT_SECONDS) as http_client:
        worker = ReconciliationWorker(
            build_session_factory(engine),
            settings,
            breaker_config=breaker_config_from_settings(settings),
            http_client=http_client,
        )

        if once:
            await worker.run_sync()
            return

        worker.start()
        try:
            # Scheduler jobs run on this loop until the process is interrupted
            await asyncio.Event().wait()
        finally:
            await worker.stop()


def main():
    """Start the reconciliation worker."""
    parser = argparse.ArgumentParser(description="Shopify reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Run a single sync pass and exit")
    args = parser.parse_args()

    logger.info("=" * 60)
    logger.info("Starting reconciliation worker")
    logger.info("=" * 60)

    try:
        asyncio.run(_run(args.once))
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.exception(f"Worker failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
