"""CLI entrypoint and programmatic interface for worker."""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Optional

from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.registry import JobRegistry, job_registry
from tenant_jobs.runtime import TenantJobsRuntime, create_db_pool, create_schema
from tenant_jobs.worker import run_worker_loop


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_handlers(handlers_module: Optional[str], logger: logging.Logger) -> None:
    """Import the built-in handlers plus an optional module of custom ones."""
    importlib.import_module("tenant_jobs.handlers")
    handlers_module = handlers_module or os.getenv("TENANT_JOBS_HANDLERS_MODULE")
    if handlers_module:
        try:
            importlib.import_module(handlers_module)
            logger.info(f"Loaded handlers from {handlers_module}")
        except ImportError as e:
            logger.warning(f"Failed to import handlers module {handlers_module}: {e}")


async def run_worker(
    queue_names: list[str],
    config: Optional[TenantJobsConfig] = None,
    db_pool=None,
    registry: Optional[JobRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    concurrency: int = 1,
    poll_interval_seconds: float = 1.0,
    handlers_module: Optional[str] = None,
    init_schema: bool = False,
):
    """
    Run the worker programmatically.

    Args:
        queue_names: Queues to process (e.g., ["campaigns", "imports"])
        config: TenantJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        registry: JobRegistry instance. If None, will use global job_registry.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        concurrency: Jobs executed at once by this process.
        poll_interval_seconds: Sleep when there is nothing to lease.
        handlers_module: Extra module to import handlers from.
        init_schema: Create missing tables before starting.

    Example:
        ```python
        from tenant_jobs.worker_main import run_worker
        import asyncio

        asyncio.run(run_worker(["campaigns"], concurrency=4))
        ```
    """
    if config is None:
        config = TenantJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if registry is None:
        registry = job_registry

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    load_handlers(handlers_module, logger)

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        if init_schema:
            await create_schema(db_pool)

        runtime = TenantJobsRuntime(config, db_pool, logger)
        await run_worker_loop(
            config=config,
            db_pool=db_pool,
            registry=registry,
            queue_names=queue_names,
            logger=logger,
            concurrency=concurrency,
            poll_interval_seconds=poll_interval_seconds,
            shutdown_event=shutdown_event,
            job_service=runtime.job_service,
            resources=runtime.handler_resources(),
        )
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Tenant Jobs Worker")
    parser.add_argument(
        "--queue",
        action="append",
        required=True,
        help="Queue to process; repeat for several (e.g., --queue campaigns --queue imports)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=1,
        help="Jobs executed at once by this process (default: 1)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=1.0,
        help="Seconds to sleep when there is nothing to lease (default: 1)",
    )
    parser.add_argument(
        "--handlers-module",
        default=None,
        help="Extra module with @job_registry.handler registrations",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create missing tables before starting",
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
        try:
            logger.info(f"Starting worker for queues: {', '.join(args.queue)}...")
            await run_worker(
                queue_names=args.queue,
                config=config,
                registry=job_registry,
                logger=logger,
                shutdown_event=shutdown_event,
                concurrency=args.concurrency,
                poll_interval_seconds=args.poll_interval,
                handlers_module=args.handlers_module,
                init_schema=args.init_schema,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
