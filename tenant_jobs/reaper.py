"""Lease reaper: returns jobs of crashed workers to their queue."""

import asyncio
import logging

from tenant_jobs.service import JobService


async def run_reaper_loop(
    job_service: JobService,
    logger: logging.Logger,
    interval_seconds: float = 30,
    shutdown_event: asyncio.Event = None,
) -> None:
    """
    Periodically revert jobs whose lease expired.

    Args:
        job_service: Job service bound to the shared database
        logger: Logger instance
        interval_seconds: Time to sleep between passes
        shutdown_event: Optional event to signal shutdown
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info(f"Starting lease reaper (interval={interval_seconds}s)")

    while not shutdown_event.is_set():
        try:
            reverted_count = await job_service.reap_expired_leases()
            if reverted_count > 0:
                logger.info(f"Lease reaper reverted {reverted_count} expired jobs")
        except Exception as e:
            logger.error(f"Error in lease reaper: {str(e)}", exc_info=True)

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Shutdown signal received, exiting reaper loop")
