"""Unit tests for worker module."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from tenant_jobs.errors import JobCanceled, LeaseExpired, RemoteHttpError, ValidationError
from tenant_jobs.models import JobStatus
from tenant_jobs.registry import JobRegistry
from tenant_jobs.service import JobService
from tenant_jobs.worker import JobContext, process_job, run_worker_loop


@pytest.fixture
def logger():
    return logging.getLogger("test_worker")


@pytest.fixture
def job_service(config, make_job):
    service = MagicMock(spec=JobService)
    service.config = config
    service.complete = AsyncMock(return_value=make_job(status=JobStatus.COMPLETED))
    service.fail = AsyncMock(return_value=make_job(status=JobStatus.DELAYED, attempts=1))
    service.finish_canceled = AsyncMock(return_value=make_job(status=JobStatus.CANCELED))
    service.heartbeat = AsyncMock()
    service.save_progress = AsyncMock()
    service.is_cancel_requested = AsyncMock(return_value=False)
    service.lease = AsyncMock(return_value=None)
    return service


def registry_with(handler):
    registry = JobRegistry()
    registry.register("send_campaign", handler)
    return registry


@pytest.mark.asyncio
async def test_process_job_success(job_service, make_job, logger):
    """Test successful job processing."""
    job = make_job(payload={"campaign_id": "c1"})
    seen = {}

    async def handler(ctx, payload):
        seen["payload"] = payload
        seen["attempt"] = ctx.attempt
        seen["tenant"] = ctx.tenant_id

    result = await process_job(job_service, registry_with(handler), job, "worker-1", logger)

    assert result.status == JobStatus.COMPLETED
    assert seen == {"payload": {"campaign_id": "c1"}, "attempt": 1, "tenant": "tenant-123"}
    job_service.complete.assert_awaited_once_with(job.id, "worker-1")
    job_service.fail.assert_not_called()


@pytest.mark.asyncio
async def test_process_job_handler_error_is_retryable(job_service, make_job, logger):
    job = make_job()
    error = RuntimeError("boom")

    async def handler(ctx, payload):
        raise error

    await process_job(job_service, registry_with(handler), job, "worker-1", logger)

    job_service.fail.assert_awaited_once_with(job.id, "worker-1", error)
    job_service.complete.assert_not_called()


@pytest.mark.asyncio
async def test_process_job_validation_error_is_permanent(job_service, make_job, logger):
    job = make_job()

    async def handler(ctx, payload):
        raise ValidationError("bad payload")

    await process_job(job_service, registry_with(handler), job, "worker-1", logger)

    assert job_service.fail.call_args.kwargs["retryable"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, retryable", [(503, True), (429, True), (0, True), (401, False)])
async def test_process_job_remote_errors(job_service, make_job, logger, status_code, retryable):
    job = make_job()

    async def handler(ctx, payload):
        raise RemoteHttpError(status_code, "send failed")

    await process_job(job_service, registry_with(handler), job, "worker-1", logger)

    assert job_service.fail.call_args.kwargs["retryable"] is retryable


@pytest.mark.asyncio
async def test_process_job_without_handler(job_service, make_job, logger):
    job = make_job(type="unknown_type")

    await process_job(job_service, JobRegistry(), job, "worker-1", logger)

    args = job_service.fail.call_args
    assert args.args[2]["type"] == "UnknownJobType"
    assert args.kwargs["retryable"] is False


@pytest.mark.asyncio
async def test_process_job_canceled_keeps_progress(job_service, make_job, logger):
    job = make_job()
    job_service.is_cancel_requested.return_value = True
    saved = make_job(progress={"sent_index": 2})
    job_service.save_progress.return_value = saved

    async def handler(ctx, payload):
        await ctx.save_progress({"sent_index": 2})
        await ctx.raise_if_canceled()

    result = await process_job(job_service, registry_with(handler), job, "worker-1", logger)

    assert result.status == JobStatus.CANCELED
    job_service.finish_canceled.assert_awaited_once_with(job.id, "worker-1", {"sent_index": 2})
    job_service.complete.assert_not_called()


@pytest.mark.asyncio
async def test_process_job_lost_lease_discards_result(job_service, make_job, logger):
    job = make_job()
    job_service.save_progress.side_effect = LeaseExpired(job.id, "worker-1")

    async def handler(ctx, payload):
        await ctx.save_progress({"sent_index": 1})

    result = await process_job(job_service, registry_with(handler), job, "worker-1", logger)

    assert result is None
    job_service.complete.assert_not_called()
    job_service.fail.assert_not_called()


@pytest.mark.asyncio
async def test_process_job_lease_lost_at_completion(job_service, make_job, logger):
    job = make_job()
    job_service.complete.side_effect = LeaseExpired(job.id, "worker-1")

    async def handler(ctx, payload):
        return None

    result = await process_job(job_service, registry_with(handler), job, "worker-1", logger)

    assert result is None


@pytest.mark.asyncio
async def test_raise_if_canceled_after_lost_lease(job_service, make_job, logger):
    job = make_job()
    job_service.heartbeat.side_effect = LeaseExpired(job.id, "worker-1")
    ctx = JobContext(job, job_service, "worker-1", logger)

    with pytest.raises(LeaseExpired):
        await ctx.heartbeat()
    assert ctx.lease_lost
    with pytest.raises(LeaseExpired):
        await ctx.raise_if_canceled()


@pytest.mark.asyncio
async def test_raise_if_canceled(job_service, make_job, logger):
    ctx = JobContext(make_job(), job_service, "worker-1", logger)
    await ctx.raise_if_canceled()

    job_service.is_cancel_requested.return_value = True
    with pytest.raises(JobCanceled):
        await ctx.raise_if_canceled()


@pytest.mark.asyncio
async def test_handler_receives_resources(job_service, make_job, logger):
    seen = {}

    async def handler(ctx, payload):
        seen.update(ctx.resources)

    await process_job(
        job_service, registry_with(handler), make_job(), "worker-1", logger, resources={"x": 1}
    )
    assert seen == {"x": 1}


@pytest.mark.asyncio
async def test_worker_loop_rejects_unknown_queue(config, job_service, logger):
    with pytest.raises(ValueError):
        await run_worker_loop(
            config, AsyncMock(), JobRegistry(), ["nope"], logger, job_service=job_service
        )


@pytest.mark.asyncio
async def test_worker_loop_processes_until_shutdown(config, job_service, make_job, logger):
    shutdown_event = asyncio.Event()
    job = make_job()
    processed = []

    async def handler(ctx, payload):
        processed.append(ctx.worker_id)
        shutdown_event.set()

    job_service.lease.side_effect = [None, job] + [None] * 100

    await asyncio.wait_for(
        run_worker_loop(
            config,
            AsyncMock(),
            registry_with(handler),
            ["reports", "campaigns"],
            logger,
            worker_id="w",
            poll_interval_seconds=0.01,
            shutdown_event=shutdown_event,
            job_service=job_service,
        ),
        timeout=5,
    )

    assert processed == ["w/0"]
    # Queues are polled in priority order
    assert job_service.lease.call_args_list[0].args == ("reports", "w/0")
    assert job_service.lease.call_args_list[1].args == ("campaigns", "w/0")
    job_service.complete.assert_awaited_once_with(job.id, "w/0")
