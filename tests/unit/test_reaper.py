"""Unit tests for the lease reaper loop."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from tenant_jobs.reaper import run_reaper_loop
from tenant_jobs.service import JobService


@pytest.mark.asyncio
async def test_reaper_runs_until_shutdown():
    shutdown_event = asyncio.Event()
    job_service = MagicMock(spec=JobService)
    calls = []

    async def reap():
        calls.append(1)
        if len(calls) == 3:
            shutdown_event.set()
        return 1

    job_service.reap_expired_leases = AsyncMock(side_effect=reap)

    await asyncio.wait_for(
        run_reaper_loop(
            job_service,
            logging.getLogger("test_reaper"),
            interval_seconds=0.01,
            shutdown_event=shutdown_event,
        ),
        timeout=5,
    )

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_reaper_survives_errors():
    shutdown_event = asyncio.Event()
    job_service = MagicMock(spec=JobService)
    outcomes = [ConnectionError("db down"), 0]

    async def reap():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        shutdown_event.set()
        return outcome

    job_service.reap_expired_leases = AsyncMock(side_effect=reap)

    await asyncio.wait_for(
        run_reaper_loop(
            job_service,
            logging.getLogger("test_reaper"),
            interval_seconds=0.01,
            shutdown_event=shutdown_event,
        ),
        timeout=5,
    )

    assert outcomes == []
