"""Worker logic for tenant jobs."""

import asyncio
import logging
import os
import socket
from typing import Any, Optional
from uuid import uuid4

import asyncpg

from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.errors import (
    JobCanceled,
    LeaseExpired,
    RemoteHttpError,
    ValidationError,
)
from tenant_jobs.models import Job, JobStatus
from tenant_jobs.registry import JobRegistry
from tenant_jobs.service import JobService


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class JobContext:
    """What a handler gets besides its payload."""

    def __init__(
        self,
        job: Job,
        service: JobService,
        worker_id: str,
        logger: logging.Logger,
        resources: Optional[dict[str, Any]] = None,
    ):
        self.job = job
        self.service = service
        self.worker_id = worker_id
        self.logger = logger
        self.resources = resources or {}
        self.lease_lost = False

    @property
    def tenant_id(self) -> str:
        return self.job.tenant_id

    @property
    def attempt(self) -> int:
        """Attempt being executed, 1-indexed."""
        return self.job.attempts + 1

    @property
    def progress(self) -> dict[str, Any]:
        return self.job.progress

    async def heartbeat(self) -> None:
        """Extend the lease; raises LeaseExpired if it was lost."""
        try:
            self.job = await self.service.heartbeat(self.job.id, self.worker_id)
        except LeaseExpired:
            self.lease_lost = True
            raise

    async def save_progress(self, progress: dict[str, Any]) -> None:
        """Persist progress so a retry resumes from here."""
        try:
            self.job = await self.service.save_progress(self.job.id, self.worker_id, progress)
        except LeaseExpired:
            self.lease_lost = True
            raise

    async def is_cancel_requested(self) -> bool:
        return await self.service.is_cancel_requested(self.job.id)

    async def raise_if_canceled(self) -> None:
        """Stop the handler if an operator canceled the job, or the lease is gone."""
        if self.lease_lost:
            raise LeaseExpired(self.job.id, self.worker_id)
        if await self.is_cancel_requested():
            raise JobCanceled(self.job.id)


async def _heartbeat_loop(ctx: JobContext, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await ctx.heartbeat()
        except LeaseExpired:
            ctx.logger.warning(f"Lost lease on job {ctx.job.id}, stopping heartbeats")
            return
        except Exception as e:
            # The next beat may still land before the lease runs out
            ctx.logger.error(f"Heartbeat failed for job {ctx.job.id}: {e}", exc_info=True)


async def process_job(
    job_service: JobService,
    registry: JobRegistry,
    job: Job,
    worker_id: str,
    logger: logging.Logger,
    resources: Optional[dict[str, Any]] = None,
) -> Optional[Job]:
    """
    Execute one leased job and record its outcome.

    Returns the updated job, or None when the lease was lost and the result
    was discarded.
    """
    handler = registry.get_handler(job.type)
    if handler is None:
        logger.error(f"No handler found for job type {job.type}")
        try:
            return await job_service.fail(
                job.id,
                worker_id,
                {"error": f"No handler for type {job.type}", "type": "UnknownJobType"},
                retryable=False,
            )
        except LeaseExpired:
            logger.warning(f"Lease on job {job.id} expired before it could be dead-lettered")
            return None

    ctx = JobContext(job, job_service, worker_id, logger, resources)
    interval = max(1.0, job_service.config.lease_seconds / 3)
    heartbeat_task = asyncio.create_task(_heartbeat_loop(ctx, interval))

    logger.info(f"Executing job {job.id} (type={job.type}, attempt={ctx.attempt}/{job.max_attempts})")

    try:
        try:
            await handler(ctx, job.payload)
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass
    except JobCanceled:
        return await _record(job_service.finish_canceled(job.id, worker_id, ctx.job.progress), job, logger)
    except LeaseExpired:
        logger.warning(f"Job {job.id} lost its lease while running, discarding result")
        return None
    except ValidationError as e:
        logger.error(f"Job {job.id} rejected its payload: {e}")
        return await _record(job_service.fail(job.id, worker_id, e, retryable=False), job, logger)
    except RemoteHttpError as e:
        logger.error(f"Job {job.id} failed calling the messaging API: {e}")
        return await _record(job_service.fail(job.id, worker_id, e, retryable=e.retryable), job, logger)
    except Exception as e:
        logger.error(f"Job {job.id} failed: {str(e)}", exc_info=True)
        return await _record(job_service.fail(job.id, worker_id, e), job, logger)

    return await _record(job_service.complete(job.id, worker_id), job, logger)


async def _record(outcome, job: Job, logger: logging.Logger) -> Optional[Job]:
    try:
        updated = await outcome
    except LeaseExpired:
        logger.warning(f"Lease on job {job.id} expired before its outcome was recorded, discarding")
        return None
    if updated.status == JobStatus.COMPLETED:
        logger.info(f"Job {job.id} completed successfully")
    return updated


async def run_worker_loop(
    config: TenantJobsConfig,
    db_pool: asyncpg.Pool,
    registry: JobRegistry,
    queue_names: list[str],
    logger: logging.Logger,
    worker_id: Optional[str] = None,
    concurrency: int = 1,
    poll_interval_seconds: float = 1.0,
    shutdown_event: asyncio.Event = None,
    job_service: Optional[JobService] = None,
    resources: Optional[dict[str, Any]] = None,
) -> None:
    """
    Run the worker loop that leases and executes jobs.

    Args:
        config: Tenant jobs configuration
        db_pool: Database connection pool
        registry: Job handler registry
        queue_names: Queues to poll, in priority order
        logger: Logger instance
        worker_id: Lease holder identity; generated from host and pid if omitted
        concurrency: Number of jobs this process runs at once
        poll_interval_seconds: Sleep when every queue is empty or saturated
        shutdown_event: Optional event to signal shutdown
        job_service: Service to use; built from ``config`` and ``db_pool`` if omitted
        resources: Shared objects handed to every handler through its context
    """
    if job_service is None:
        job_service = JobService(config, db_pool, logger)
    if shutdown_event is None:
        shutdown_event = asyncio.Event()
    worker_id = worker_id or default_worker_id()

    for queue_name in queue_names:
        if config.get_queue_config(queue_name) is None:
            raise ValueError(f"Unknown queue {queue_name}")

    logger.info(f"Starting worker {worker_id} for queues {', '.join(queue_names)} (concurrency={concurrency})")

    async def slot(slot_number: int) -> None:
        slot_worker_id = f"{worker_id}/{slot_number}"
        while not shutdown_event.is_set():
            try:
                job = None
                for queue_name in queue_names:
                    job = await job_service.lease(queue_name, slot_worker_id)
                    if job:
                        break

                if job is None:
                    try:
                        await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval_seconds)
                    except asyncio.TimeoutError:
                        pass
                    continue

                await process_job(job_service, registry, job, slot_worker_id, logger, resources)

            except Exception as e:
                logger.error(f"Error in worker loop: {str(e)}", exc_info=True)
                await asyncio.sleep(5)  # Brief pause before retrying

        logger.info(f"Worker slot {slot_worker_id} stopped")

    await asyncio.gather(*(slot(n) for n in range(concurrency)))
    logger.info("Shutdown signal received, worker loop exited")
