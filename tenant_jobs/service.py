"""High-level service layer for job operations."""

import json
import logging
import random
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional, Union
from uuid import UUID, uuid4

import asyncpg

from tenant_jobs.config import QueueConfig, RetryPolicy, TenantJobsConfig
from tenant_jobs.errors import (
    ExhaustedError,
    InvalidQueue,
    LeaseExpired,
    PayloadTooLarge,
    ValidationError,
)
from tenant_jobs.models import Job, JobStatus, utcnow
from tenant_jobs.store import JobStore

if TYPE_CHECKING:
    from tenant_jobs.quota import QuotaService


def calculate_backoff(policy: RetryPolicy, attempt: int) -> float:
    """
    Calculate backoff delay based on policy and attempt number.

    Args:
        policy: Retry policy of the job's queue
        attempt: Attempt number that just failed (1-indexed)

    Returns:
        Backoff delay in seconds, capped at the policy's max delay
    """
    base = policy.backoff_base_seconds

    if policy.backoff_strategy == "linear":
        delay = base * attempt
    elif policy.backoff_strategy == "constant":
        delay = base
    else:
        # Exponential backoff: base * 2^(attempt-1)
        delay = base * (2 ** (attempt - 1))

    delay = min(delay, policy.max_delay_seconds)

    if policy.jitter:
        # Spread retries of jobs that failed together
        delay = delay * (1.0 + random.uniform(-policy.jitter, policy.jitter))
        delay = min(max(delay, 0.0), policy.max_delay_seconds)

    return delay


def _error_record(error: Union[BaseException, dict[str, Any]], attempt: int) -> dict[str, Any]:
    if isinstance(error, dict):
        record = dict(error)
    else:
        record = {"error": str(error), "type": type(error).__name__}
    record.setdefault("timestamp", utcnow().isoformat())
    record["attempt"] = attempt
    return record


class JobService:
    """High-level API for job operations."""

    def __init__(
        self,
        config: TenantJobsConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
        quota_service: Optional["QuotaService"] = None,
    ):
        self.config = config
        self.store = JobStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)
        self.quota_service = quota_service

    def _queue_config(self, queue_name: str) -> QueueConfig:
        queue = self.config.get_queue_config(queue_name)
        if queue is None:
            raise InvalidQueue(queue_name)
        return queue

    async def enqueue(
        self,
        *,
        queue_name: str,
        tenant_id: str,
        type: str,
        payload: dict[str, Any],
        delay: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        quota_type: Optional[str] = None,
        quota_reserved: int = 0,
    ) -> UUID:
        """
        Enqueue a new job.

        Args:
            queue_name: Queue to add the job to (e.g., "campaigns")
            tenant_id: Tenant identifier
            type: Job type, used to select the handler (e.g., "send_campaign")
            payload: Job payload as dictionary
            delay: Optional delay before the job becomes eligible
            max_attempts: Override of the queue's retry policy
            quota_type: Quota already reserved for this job, if any
            quota_reserved: Amount reserved, released on failure or cancellation

        Returns:
            UUID: The created job ID

        Raises:
            InvalidQueue: If the queue is not configured
            PayloadTooLarge: If the encoded payload exceeds the queue limit
        """
        queue = self._queue_config(queue_name)

        size = len(json.dumps(payload).encode("utf-8"))
        if size > queue.max_payload_bytes:
            raise PayloadTooLarge(size, queue.max_payload_bytes)

        if max_attempts is None:
            max_attempts = queue.retry_policy.max_attempts
        elif max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")

        available_at = utcnow()
        if delay:
            available_at += delay

        job_id = uuid4()
        await self.store.insert_job(
            id=job_id,
            queue_name=queue_name,
            tenant_id=tenant_id,
            type=type,
            payload=payload,
            max_attempts=max_attempts,
            available_at=available_at,
            quota_type=quota_type,
            quota_reserved=quota_reserved,
        )

        self.logger.info(f"Enqueued job {job_id} ({type}) for tenant {tenant_id} on queue {queue_name}")
        return job_id

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID.

        Raises:
            JobNotFoundError: If no such job exists
        """
        return await self.store.get_job(job_id)

    async def list_jobs(
        self,
        *,
        tenant_id: Optional[str] = None,
        queue_name: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        return await self.store.list_jobs(
            tenant_id=tenant_id, queue_name=queue_name, status=status, limit=limit
        )

    async def list_dead_letters(
        self,
        *,
        queue_name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List dead-lettered jobs for operator review."""
        return await self.store.list_jobs(
            tenant_id=tenant_id,
            queue_name=queue_name,
            status=JobStatus.DEAD.value,
            limit=limit,
        )

    async def lease(
        self,
        queue_name: str,
        worker_id: str,
        lease_duration: Optional[timedelta] = None,
    ) -> Optional[Job]:
        """
        Lease the oldest eligible job of a queue.

        Returns None when the queue is empty or already at its concurrency
        limit. Concurrent callers never receive the same job.
        """
        queue = self._queue_config(queue_name)
        if lease_duration is None:
            lease_duration = timedelta(seconds=self.config.lease_seconds)

        now = utcnow()
        job = await self.store.lease_next_job(
            queue_name=queue_name,
            worker_id=worker_id,
            concurrency=queue.concurrency,
            now=now,
            locked_until=now + lease_duration,
        )
        if job:
            self.logger.debug(f"Worker {worker_id} leased job {job.id} until {job.locked_until}")
        return job

    async def complete(self, job_id: UUID, worker_id: str) -> Job:
        """
        Mark a leased job as completed.

        Raises:
            LeaseExpired: If the worker lost its lease; the result must be discarded
        """
        job = await self.store.complete_job(job_id, worker_id, utcnow())
        if job is None:
            await self._raise_lease_lost(job_id, worker_id)

        self.logger.info(f"Job {job_id} completed")
        await self._release_unused_quota(job)
        return job

    async def fail(
        self,
        job_id: UUID,
        worker_id: str,
        error: Union[BaseException, dict[str, Any]],
        retryable: bool = True,
    ) -> Job:
        """
        Record a failed attempt.

        Reschedules the job as delayed with exponential backoff while attempts
        remain, otherwise moves it to the dead-letter state.

        Raises:
            LeaseExpired: If the worker lost its lease
        """
        now = utcnow()
        job = await self.store.get_job(job_id)
        if (
            job.status != JobStatus.ACTIVE
            or job.locked_by != worker_id
            or job.locked_until is None
            or job.locked_until < now
        ):
            raise LeaseExpired(job_id, worker_id)

        queue = self.config.get_queue_config(job.queue_name)
        policy = queue.retry_policy if queue else RetryPolicy(max_attempts=job.max_attempts)

        attempt = job.attempts + 1
        error_record = _error_record(error, attempt)

        if retryable and attempt < job.max_attempts:
            backoff_seconds = calculate_backoff(policy, attempt)
            updated = await self.store.update_job_retry(
                job_id,
                worker_id,
                expected_attempts=job.attempts,
                error=error_record,
                available_at=now + timedelta(seconds=backoff_seconds),
                now=now,
            )
            if updated is None:
                raise LeaseExpired(job_id, worker_id)
            self.logger.info(
                f"Job {job_id} will retry (attempt {attempt}/{job.max_attempts}) "
                f"after {backoff_seconds:.1f}s"
            )
            return updated

        updated = await self.store.update_job_dead(
            job_id,
            worker_id,
            expected_attempts=job.attempts,
            error=error_record,
            now=now,
        )
        if updated is None:
            raise LeaseExpired(job_id, worker_id)

        self.logger.error(f"{ExhaustedError(job_id, attempt)}: {error_record.get('error')}")
        await self._release_unused_quota(updated)
        return updated

    async def heartbeat(
        self, job_id: UUID, worker_id: str, extension: Optional[timedelta] = None
    ) -> Job:
        """
        Extend the lease of a running job.

        Raises:
            LeaseExpired: If the lease already expired or is held by someone else
        """
        if extension is None:
            extension = timedelta(seconds=self.config.lease_seconds)
        now = utcnow()
        job = await self.store.extend_lease(job_id, worker_id, now, now + extension)
        if job is None:
            await self._raise_lease_lost(job_id, worker_id)
        return job

    async def save_progress(self, job_id: UUID, worker_id: str, progress: dict[str, Any]) -> Job:
        """Record partial progress so a retried job resumes where it stopped."""
        job = await self.store.save_progress(job_id, worker_id, progress, utcnow())
        if job is None:
            await self._raise_lease_lost(job_id, worker_id)
        return job

    async def cancel(self, job_id: UUID) -> Job:
        """
        Cancel a job on operator request.

        Waiting and delayed jobs are canceled at once. A running job is
        flagged and its worker stops at the next unit of externally visible
        work. Terminal jobs are returned unchanged.
        """
        job = await self.store.request_cancel(job_id, utcnow())
        if job is None:
            return await self.get_job(job_id)

        if job.status == JobStatus.CANCELED:
            self.logger.info(f"Job {job_id} canceled before running")
            await self._release_unused_quota(job)
        else:
            self.logger.info(f"Cancellation requested for running job {job_id}")
        return job

    async def is_cancel_requested(self, job_id: UUID) -> bool:
        """Whether an operator asked for the job to stop."""
        return await self.store.is_cancel_requested(job_id)

    async def finish_canceled(
        self, job_id: UUID, worker_id: str, progress: Optional[dict[str, Any]] = None
    ) -> Job:
        """Finish a running job as canceled, keeping its partial progress."""
        if progress is None:
            progress = (await self.get_job(job_id)).progress
        job = await self.store.mark_canceled(job_id, worker_id, progress, utcnow())
        if job is None:
            await self._raise_lease_lost(job_id, worker_id)

        self.logger.info(f"Job {job_id} canceled with progress {progress}")
        await self._release_unused_quota(job)
        return job

    async def retry_dead_letter(self, job_id: UUID) -> Job:
        """Requeue a dead-lettered job with a fresh attempt budget."""
        job = await self.store.requeue_dead_job(job_id, utcnow())
        if job is None:
            current = await self.get_job(job_id)
            raise ValidationError(
                f"Job {job_id} is {current.status.value}, only dead jobs can be requeued"
            )
        self.logger.info(f"Dead job {job_id} requeued by operator")
        return job

    async def reap_expired_leases(self) -> int:
        """
        Revert jobs with expired leases.

        This should be called periodically to recover from worker crashes.
        Returns the number of jobs reverted, dead-lettered or canceled.
        """
        reverted_count, dead_jobs, canceled_jobs = await self.store.revert_expired_leases(utcnow())
        for job in dead_jobs:
            self.logger.error(f"Job {job.id} dead-lettered after losing its lease {job.attempts} times")
            await self._release_unused_quota(job)
        for job in canceled_jobs:
            self.logger.info(f"Job {job.id} canceled after losing its lease")
            await self._release_unused_quota(job)

        count = reverted_count + len(dead_jobs) + len(canceled_jobs)
        if count > 0:
            self.logger.info(f"Reverted {count} jobs with expired leases")
        return count

    async def _raise_lease_lost(self, job_id: UUID, worker_id: str) -> None:
        # Raises JobNotFoundError when the job does not exist at all
        await self.store.get_job(job_id)
        raise LeaseExpired(job_id, worker_id)

    async def _release_unused_quota(self, job: Job) -> None:
        """Give back the part of a job's quota reservation it did not use."""
        if self.quota_service is None or not job.quota_type or job.quota_reserved <= 0:
            return

        default_consumed = job.quota_reserved if job.status == JobStatus.COMPLETED else 0
        consumed = int(job.progress.get("quota_consumed", default_consumed))
        unused = job.quota_reserved - consumed
        if unused <= 0:
            return

        try:
            await self.quota_service.release(job.tenant_id, job.quota_type, unused)
        except Exception as e:
            # Outcome is already recorded, never fail the caller here
            self.logger.error(
                f"Failed to release {unused} {job.quota_type} for job {job.id}: {e}",
                exc_info=True,
            )
