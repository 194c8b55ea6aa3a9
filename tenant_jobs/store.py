"""Database store layer for jobs."""

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg

from tenant_jobs.errors import JobNotFoundError
from tenant_jobs.models import Job, JobStatus


class JobStore:
    """Database layer for job operations.

    Every mutation of a leased job is a compare-and-set on
    ``(status, locked_by, locked_until)`` so a worker whose lease expired can
    never overwrite the state written by the next holder.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_job(
        self,
        id: UUID,
        queue_name: str,
        tenant_id: str,
        type: str,
        payload: dict[str, Any],
        max_attempts: int,
        available_at: datetime,
        quota_type: Optional[str] = None,
        quota_reserved: int = 0,
    ) -> Job:
        """Insert a new waiting job."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (
                    id, queue_name, tenant_id, type, status, payload,
                    attempts, max_attempts, available_at, quota_type, quota_reserved
                ) VALUES ($1, $2, $3, $4, $5, $6, 0, $7, $8, $9, $10)
                RETURNING *
                """,
                id,
                queue_name,
                tenant_id,
                type,
                JobStatus.WAITING.value,
                json.dumps(payload),
                max_attempts,
                available_at,
                quota_type,
                quota_reserved,
            )

        return self._row_to_job(row)

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def list_jobs(
        self,
        tenant_id: Optional[str] = None,
        queue_name: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        query = "SELECT * FROM jobs WHERE 1=1"
        params = []
        param_idx = 1

        if tenant_id:
            query += f" AND tenant_id = ${param_idx}"
            params.append(tenant_id)
            param_idx += 1

        if queue_name:
            query += f" AND queue_name = ${param_idx}"
            params.append(queue_name)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def lease_next_job(
        self,
        queue_name: str,
        worker_id: str,
        concurrency: int,
        now: datetime,
        locked_until: datetime,
    ) -> Optional[Job]:
        """
        Atomically lease the oldest eligible job of a queue.

        The per-queue advisory lock serializes the concurrency check with the
        lease itself, so two workers cannot both take the last free slot.
        Other queues use different lock keys and never wait on this one.
        FOR UPDATE SKIP LOCKED keeps concurrent callers off the same row.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"jobs:lease:{queue_name}",
                )

                active = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM jobs
                    WHERE queue_name = $1 AND status = $2 AND locked_until >= $3
                    """,
                    queue_name,
                    JobStatus.ACTIVE.value,
                    now,
                )
                if active >= concurrency:
                    return None

                row = await conn.fetchrow(
                    """
                    UPDATE jobs
                    SET status = $1,
                        locked_by = $2,
                        locked_until = $3,
                        updated_at = $4
                    WHERE id = (
                        SELECT id FROM jobs
                        WHERE queue_name = $5
                          AND status IN ($6, $7)
                          AND available_at <= $4
                        ORDER BY available_at ASC, created_at ASC
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING *
                    """,
                    JobStatus.ACTIVE.value,
                    worker_id,
                    locked_until,
                    now,
                    queue_name,
                    JobStatus.WAITING.value,
                    JobStatus.DELAYED.value,
                )

        return self._row_to_job(row) if row else None

    async def complete_job(self, job_id: UUID, worker_id: str, now: datetime) -> Optional[Job]:
        """Mark a leased job as completed. Returns None if the lease is not held."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    locked_by = NULL,
                    locked_until = NULL,
                    updated_at = $4,
                    finished_at = $4
                WHERE id = $2
                  AND status = $3
                  AND locked_by = $5
                  AND locked_until >= $4
                RETURNING *
                """,
                JobStatus.COMPLETED.value,
                job_id,
                JobStatus.ACTIVE.value,
                now,
                worker_id,
            )
        return self._row_to_job(row) if row else None

    async def update_job_retry(
        self,
        job_id: UUID,
        worker_id: str,
        expected_attempts: int,
        error: dict[str, Any],
        available_at: datetime,
        now: datetime,
    ) -> Optional[Job]:
        """Release a leased job as delayed with incremented attempts."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    attempts = attempts + 1,
                    last_error = $2,
                    available_at = $3,
                    locked_by = NULL,
                    locked_until = NULL,
                    updated_at = $4
                WHERE id = $5
                  AND status = $6
                  AND locked_by = $7
                  AND locked_until >= $4
                  AND attempts = $8
                RETURNING *
                """,
                JobStatus.DELAYED.value,
                json.dumps(error),
                available_at,
                now,
                job_id,
                JobStatus.ACTIVE.value,
                worker_id,
                expected_attempts,
            )
        return self._row_to_job(row) if row else None

    async def update_job_dead(
        self,
        job_id: UUID,
        worker_id: str,
        expected_attempts: int,
        error: dict[str, Any],
        now: datetime,
    ) -> Optional[Job]:
        """Dead-letter a leased job (permanent failure)."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    attempts = attempts + 1,
                    last_error = $2,
                    locked_by = NULL,
                    locked_until = NULL,
                    updated_at = $3,
                    finished_at = $3
                WHERE id = $4
                  AND status = $5
                  AND locked_by = $6
                  AND locked_until >= $3
                  AND attempts = $7
                RETURNING *
                """,
                JobStatus.DEAD.value,
                json.dumps(error),
                now,
                job_id,
                JobStatus.ACTIVE.value,
                worker_id,
                expected_attempts,
            )
        return self._row_to_job(row) if row else None

    async def extend_lease(
        self, job_id: UUID, worker_id: str, now: datetime, locked_until: datetime
    ) -> Optional[Job]:
        """Push out the lease of a job the worker still holds."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET locked_until = $1, updated_at = $2
                WHERE id = $3
                  AND status = $4
                  AND locked_by = $5
                  AND locked_until >= $2
                RETURNING *
                """,
                locked_until,
                now,
                job_id,
                JobStatus.ACTIVE.value,
                worker_id,
            )
        return self._row_to_job(row) if row else None

    async def save_progress(
        self, job_id: UUID, worker_id: str, progress: dict[str, Any], now: datetime
    ) -> Optional[Job]:
        """Record partial progress for a leased job."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET progress = $1, updated_at = $2
                WHERE id = $3
                  AND status = $4
                  AND locked_by = $5
                  AND locked_until >= $2
                RETURNING *
                """,
                json.dumps(progress),
                now,
                job_id,
                JobStatus.ACTIVE.value,
                worker_id,
            )
        return self._row_to_job(row) if row else None

    async def request_cancel(self, job_id: UUID, now: datetime) -> Optional[Job]:
        """
        Cancel a job.

        Jobs that are not running are canceled immediately; running jobs are
        flagged and the worker holding them stops at the next checkpoint.
        Returns None when the job is already terminal.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = CASE WHEN status = $1 THEN status ELSE $2 END,
                    cancel_requested = TRUE,
                    finished_at = CASE WHEN status = $1 THEN finished_at ELSE $3 END,
                    updated_at = $3
                WHERE id = $4
                  AND status IN ($1, $5, $6)
                RETURNING *
                """,
                JobStatus.ACTIVE.value,
                JobStatus.CANCELED.value,
                now,
                job_id,
                JobStatus.WAITING.value,
                JobStatus.DELAYED.value,
            )
        return self._row_to_job(row) if row else None

    async def is_cancel_requested(self, job_id: UUID) -> bool:
        """Check whether an operator asked for a job to be canceled."""
        async with self.db_pool.acquire() as conn:
            requested = await conn.fetchval(
                "SELECT cancel_requested FROM jobs WHERE id = $1", job_id
            )
        return bool(requested)

    async def mark_canceled(
        self, job_id: UUID, worker_id: str, progress: dict[str, Any], now: datetime
    ) -> Optional[Job]:
        """Finish a leased job as canceled, keeping its recorded progress."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    progress = $2,
                    locked_by = NULL,
                    locked_until = NULL,
                    updated_at = $3,
                    finished_at = $3
                WHERE id = $4
                  AND status = $5
                  AND locked_by = $6
                RETURNING *
                """,
                JobStatus.CANCELED.value,
                json.dumps(progress),
                now,
                job_id,
                JobStatus.ACTIVE.value,
                worker_id,
            )
        return self._row_to_job(row) if row else None

    async def revert_expired_leases(self, now: datetime) -> tuple[int, list[Job], list[Job]]:
        """
        Return jobs whose lease expired to waiting, or dead-letter them.

        A lost lease counts as an attempt so a job that keeps crashing its
        worker cannot loop forever. Jobs with a pending cancel request are
        finished as canceled instead. Returns the number of reverted jobs,
        the jobs that were dead-lettered and the jobs that were canceled.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                canceled_rows = await conn.fetch(
                    """
                    UPDATE jobs
                    SET status = $1,
                        locked_by = NULL,
                        locked_until = NULL,
                        updated_at = $3,
                        finished_at = $3
                    WHERE status = $2
                      AND locked_until < $3
                      AND cancel_requested
                    RETURNING *
                    """,
                    JobStatus.CANCELED.value,
                    JobStatus.ACTIVE.value,
                    now,
                )

                # Revert to waiting if attempts remain
                result = await conn.execute(
                    """
                    UPDATE jobs
                    SET status = $1,
                        attempts = attempts + 1,
                        locked_by = NULL,
                        locked_until = NULL,
                        available_at = $3,
                        last_error = jsonb_build_object(
                            'error', 'Lease expired - worker may have crashed',
                            'type', 'LeaseExpired',
                            'timestamp', $4::text
                        ),
                        updated_at = $3
                    WHERE status = $2
                      AND locked_until < $3
                      AND attempts + 1 < max_attempts
                      AND NOT cancel_requested
                    """,
                    JobStatus.WAITING.value,
                    JobStatus.ACTIVE.value,
                    now,
                    now.isoformat(),
                )

                # Extract count from result string like "UPDATE 5"
                reverted_count = int(result.split()[-1]) if result else 0

                dead_rows = await conn.fetch(
                    """
                    UPDATE jobs
                    SET status = $1,
                        attempts = attempts + 1,
                        locked_by = NULL,
                        locked_until = NULL,
                        last_error = jsonb_build_object(
                            'error', 'Lease expired after max attempts',
                            'type', 'ExhaustedError',
                            'timestamp', $4::text
                        ),
                        updated_at = $3,
                        finished_at = $3
                    WHERE status = $2
                      AND locked_until < $3
                      AND attempts + 1 >= max_attempts
                      AND NOT cancel_requested
                    RETURNING *
                    """,
                    JobStatus.DEAD.value,
                    JobStatus.ACTIVE.value,
                    now,
                    now.isoformat(),
                )

        return (
            reverted_count,
            [self._row_to_job(row) for row in dead_rows],
            [self._row_to_job(row) for row in canceled_rows],
        )

    async def requeue_dead_job(self, job_id: UUID, now: datetime) -> Optional[Job]:
        """Put a dead-lettered job back in the queue with a fresh attempt budget."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    attempts = 0,
                    available_at = $2,
                    cancel_requested = FALSE,
                    finished_at = NULL,
                    updated_at = $2
                WHERE id = $3 AND status = $4
                RETURNING *
                """,
                JobStatus.WAITING.value,
                now,
                job_id,
                JobStatus.DEAD.value,
            )
        return self._row_to_job(row) if row else None

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            queue_name=row["queue_name"],
            tenant_id=row["tenant_id"],
            type=row["type"],
            status=JobStatus(row["status"]),
            payload=json.loads(row["payload"])
            if isinstance(row["payload"], str)
            else row["payload"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            available_at=row["available_at"],
            locked_by=row["locked_by"],
            locked_until=row["locked_until"],
            last_error=json.loads(row["last_error"])
            if row["last_error"] and isinstance(row["last_error"], str)
            else row["last_error"],
            progress=json.loads(row["progress"])
            if row["progress"] and isinstance(row["progress"], str)
            else row["progress"],
            cancel_requested=row["cancel_requested"],
            quota_type=row["quota_type"],
            quota_reserved=row["quota_reserved"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finished_at=row["finished_at"],
        )
