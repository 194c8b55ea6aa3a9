"""CLI entrypoint for the lease reaper."""

import argparse
import asyncio
import logging
import signal
import sys

from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.reaper import run_reaper_loop
from tenant_jobs.runtime import TenantJobsRuntime, create_db_pool
from tenant_jobs.worker_main import setup_logging


def main():
    """Main entrypoint for the reaper."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Tenant Jobs Lease Reaper")
    parser.add_argument(
        "--interval",
        type=float,
        default=30,
        help="Seconds between reaper passes (default: 30)",
    )
    args = parser.parse_args()

    try:
        config = TenantJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        db_pool = None
        try:
            logger.info("Creating database connection pool...")
            db_pool = await create_db_pool(config)

            runtime = TenantJobsRuntime(config, db_pool, logger)
            await run_reaper_loop(
                job_service=runtime.job_service,
                logger=logger,
                interval_seconds=args.interval,
                shutdown_event=shutdown_event,
            )
        except Exception as e:
            logger.error(f"Fatal error in reaper: {e}", exc_info=True)
            sys.exit(1)
        finally:
            if db_pool:
                logger.info("Closing database connection pool...")
                await db_pool.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
