"""Integration tests for the job engine.

These tests use real Postgres (via testcontainers) to check leasing,
retries, dead-lettering, cancellation and lease recovery end to end.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from tenant_jobs.config import QueueConfig, TenantJobsConfig
from tenant_jobs.errors import LeaseExpired
from tenant_jobs.models import JobStatus
from tenant_jobs.registry import JobRegistry
from tenant_jobs.service import JobService
from tenant_jobs.worker import run_worker_loop

pytestmark = pytest.mark.integration


@pytest.fixture
def service(config, db_pool):
    return JobService(config, db_pool)


async def enqueue(service, queue_name="campaigns", tenant_id="tenant1", **kwargs):
    return await service.enqueue(
        queue_name=queue_name,
        tenant_id=tenant_id,
        type=kwargs.pop("type", "send_campaign"),
        payload=kwargs.pop("payload", {"campaign_id": "c1"}),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_enqueue_lease_complete(service):
    job_id = await enqueue(service)

    job = await service.get_job(job_id)
    assert job.status == JobStatus.WAITING
    assert job.payload == {"campaign_id": "c1"}

    leased = await service.lease("campaigns", "worker-1")
    assert leased.id == job_id
    assert leased.status == JobStatus.ACTIVE
    assert leased.locked_by == "worker-1"

    completed = await service.complete(job_id, "worker-1")
    assert completed.status == JobStatus.COMPLETED
    assert completed.finished_at is not None
    assert completed.locked_by is None

    assert await service.lease("campaigns", "worker-1") is None


@pytest.mark.asyncio
async def test_concurrent_leases_are_exclusive(db_pool):
    config = TenantJobsConfig(
        db_dsn="unused",
        queues={"bulk": QueueConfig(name="bulk", concurrency=50)},
        lease_seconds=30,
    )
    service = JobService(config, db_pool)
    job_ids = {await enqueue(service, queue_name="bulk") for _ in range(10)}

    results = await asyncio.gather(
        *(service.lease("bulk", f"worker-{n}") for n in range(20))
    )

    leased = [job for job in results if job is not None]
    assert len(leased) == 10
    assert {job.id for job in leased} == job_ids


@pytest.mark.asyncio
async def test_queue_concurrency_limit(service):
    for _ in range(3):
        await enqueue(service)

    results = await asyncio.gather(
        *(service.lease("campaigns", f"worker-{n}") for n in range(5))
    )
    leased = [job for job in results if job is not None]
    # The campaigns queue allows two jobs at once
    assert len(leased) == 2

    await service.complete(leased[0].id, leased[0].locked_by)
    assert await service.lease("campaigns", "worker-9") is not None


@pytest.mark.asyncio
async def test_queues_do_not_share_concurrency(service):
    await enqueue(service)
    await enqueue(service)
    await enqueue(service)
    await enqueue(service, queue_name="reports", type="build_report", payload={})

    await service.lease("campaigns", "worker-1")
    await service.lease("campaigns", "worker-2")

    assert await service.lease("campaigns", "worker-3") is None
    assert await service.lease("reports", "worker-3") is not None


@pytest.mark.asyncio
async def test_oldest_eligible_job_first(service):
    later = await enqueue(service, delay=timedelta(hours=1))
    first = await enqueue(service)
    second = await enqueue(service)

    assert (await service.lease("campaigns", "worker-1")).id == first
    assert (await service.lease("campaigns", "worker-2")).id == second
    assert (await service.get_job(later)).status == JobStatus.WAITING


@pytest.mark.asyncio
async def test_failure_backoff_then_dead_letter(service):
    """Failures delay the job by 1, 2, 4, 8s; the fifth failure dead-letters it."""
    job_id = await enqueue(service)

    for attempt, expected_delay in enumerate([1, 2, 4, 8], start=1):
        leased = await service.lease("campaigns", "worker-1")
        assert leased.id == job_id

        before = datetime.now(timezone.utc)
        failed = await service.fail(job_id, "worker-1", RuntimeError(f"boom {attempt}"))

        assert failed.status == JobStatus.DELAYED
        assert failed.attempts == attempt
        assert failed.last_error["error"] == f"boom {attempt}"
        delay = (failed.available_at - before).total_seconds()
        assert expected_delay - 1 < delay <= expected_delay + 1

        # Not eligible until the backoff passes
        assert await service.lease("campaigns", "worker-1") is None
        async with service.store.db_pool.acquire() as conn:
            await conn.execute(
                "UPDATE jobs SET available_at = now() - interval '1 second' WHERE id = $1", job_id
            )

    await service.lease("campaigns", "worker-1")
    dead = await service.fail(job_id, "worker-1", RuntimeError("boom 5"))

    assert dead.status == JobStatus.DEAD
    assert dead.attempts == 5
    assert dead.finished_at is not None
    assert [job.id for job in await service.list_dead_letters()] == [job_id]

    requeued = await service.retry_dead_letter(job_id)
    assert requeued.status == JobStatus.WAITING
    assert requeued.attempts == 0


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters(service):
    job_id = await enqueue(service)
    await service.lease("campaigns", "worker-1")

    dead = await service.fail(job_id, "worker-1", {"error": "bad payload"}, retryable=False)

    assert dead.status == JobStatus.DEAD
    assert dead.attempts == 1


@pytest.mark.asyncio
async def test_expired_lease_is_reaped_and_stale_worker_rejected(service):
    job_id = await enqueue(service)
    await service.lease("campaigns", "worker-1", lease_duration=timedelta(milliseconds=50))
    await asyncio.sleep(0.2)

    # The stale holder can no longer report anything
    with pytest.raises(LeaseExpired):
        await service.complete(job_id, "worker-1")
    with pytest.raises(LeaseExpired):
        await service.heartbeat(job_id, "worker-1")

    assert await service.reap_expired_leases() == 1
    reverted = await service.get_job(job_id)
    assert reverted.status == JobStatus.WAITING
    assert reverted.attempts == 1
    assert reverted.last_error["type"] == "LeaseExpired"

    # A new holder's lease is not disturbed by the old one
    released = await service.lease("campaigns", "worker-2")
    assert released.id == job_id
    with pytest.raises(LeaseExpired):
        await service.fail(job_id, "worker-1", RuntimeError("late"))
    assert (await service.complete(job_id, "worker-2")).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_reaper_dead_letters_exhausted_job(service):
    job_id = await enqueue(service, max_attempts=1)
    await service.lease("campaigns", "worker-1", lease_duration=timedelta(milliseconds=50))
    await asyncio.sleep(0.2)

    assert await service.reap_expired_leases() == 1
    dead = await service.get_job(job_id)
    assert dead.status == JobStatus.DEAD
    assert dead.attempts == 1


@pytest.mark.asyncio
async def test_reaper_cancels_flagged_job_instead_of_requeueing(service):
    job_id = await enqueue(service)
    await service.lease("campaigns", "worker-1", lease_duration=timedelta(milliseconds=50))
    flagged = await service.cancel(job_id)
    assert flagged.status == JobStatus.ACTIVE
    assert flagged.cancel_requested
    await asyncio.sleep(0.2)

    assert await service.reap_expired_leases() == 1

    canceled = await service.get_job(job_id)
    assert canceled.status == JobStatus.CANCELED
    assert canceled.attempts == 0
    assert canceled.locked_by is None
    assert canceled.finished_at is not None
    assert await service.lease("campaigns", "worker-2") is None


@pytest.mark.asyncio
async def test_expired_leases_do_not_count_against_concurrency(service):
    for _ in range(3):
        await enqueue(service)
    await service.lease("campaigns", "worker-1", lease_duration=timedelta(milliseconds=50))
    await service.lease("campaigns", "worker-2", lease_duration=timedelta(milliseconds=50))
    await asyncio.sleep(0.2)

    assert await service.lease("campaigns", "worker-3") is not None


@pytest.mark.asyncio
async def test_heartbeat_extends_lease(service):
    job_id = await enqueue(service)
    leased = await service.lease("campaigns", "worker-1", lease_duration=timedelta(seconds=5))

    extended = await service.heartbeat(job_id, "worker-1", extension=timedelta(seconds=60))

    assert extended.locked_until > leased.locked_until


@pytest.mark.asyncio
async def test_progress_survives_retry(service):
    job_id = await enqueue(service)
    await service.lease("campaigns", "worker-1")
    await service.save_progress(job_id, "worker-1", {"sent_index": 3, "sent": 3})
    await service.fail(job_id, "worker-1", RuntimeError("network"))

    async with service.store.db_pool.acquire() as conn:
        await conn.execute("UPDATE jobs SET available_at = now() WHERE id = $1", job_id)

    leased = await service.lease("campaigns", "worker-2")
    assert leased.progress == {"sent_index": 3, "sent": 3}
    assert leased.attempts == 1


@pytest.mark.asyncio
async def test_cancel_waiting_and_running_jobs(service):
    waiting_id = await enqueue(service)
    running_id = await enqueue(service, delay=timedelta(seconds=-1))

    running = await service.lease("campaigns", "worker-1")
    assert running.id == running_id

    canceled = await service.cancel(waiting_id)
    assert canceled.status == JobStatus.CANCELED
    assert await service.lease("campaigns", "worker-2") is None

    flagged = await service.cancel(running_id)
    assert flagged.status == JobStatus.ACTIVE
    assert await service.is_cancel_requested(running_id)

    await service.save_progress(running_id, "worker-1", {"sent_index": 2})
    finished = await service.finish_canceled(running_id, "worker-1")
    assert finished.status == JobStatus.CANCELED
    assert finished.progress == {"sent_index": 2}

    # Terminal jobs are left alone
    assert (await service.cancel(running_id)).status == JobStatus.CANCELED


@pytest.mark.asyncio
async def test_worker_loop_processes_jobs(config, db_pool, service):
    registry = JobRegistry()
    shutdown_event = asyncio.Event()
    handled = []

    @registry.handler("send_campaign")
    async def handler(ctx, payload):
        await ctx.save_progress({"seen": payload["campaign_id"]})
        handled.append(payload["campaign_id"])
        if len(handled) == 2:
            shutdown_event.set()

    @registry.handler("flaky")
    async def flaky(ctx, payload):
        raise RuntimeError("always fails")

    first = await enqueue(service, payload={"campaign_id": "a"})
    second = await enqueue(service, payload={"campaign_id": "b"})
    flaky_id = await enqueue(service, type="flaky", payload={})

    await asyncio.wait_for(
        run_worker_loop(
            config,
            db_pool,
            registry,
            ["campaigns"],
            logging.getLogger("test_worker_loop"),
            concurrency=2,
            poll_interval_seconds=0.05,
            shutdown_event=shutdown_event,
            job_service=service,
        ),
        timeout=30,
    )

    assert sorted(handled) == ["a", "b"]
    for job_id in (first, second):
        job = await service.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert "seen" in job.progress

    flaky_job = await service.get_job(flaky_id)
    assert flaky_job.status in (JobStatus.WAITING, JobStatus.DELAYED)
    if flaky_job.status == JobStatus.DELAYED:
        assert flaky_job.last_error["error"] == "always fails"
