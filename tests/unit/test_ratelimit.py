"""Unit tests for the token bucket."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from tenant_jobs.errors import ValidationError
from tenant_jobs.models import RateLimitDecision, TenantRateState
from tenant_jobs.ratelimit import TenantRateLimiter, apply_plan, consume, new_bucket, refill

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def free_plan(config):
    return config.get_plan("free")


def test_new_bucket_is_full(free_plan):
    state = new_bucket("tenant1", free_plan, T0)
    assert state.tokens == 100
    assert state.capacity == 100
    assert state.plan_id == "free"


def test_burst_then_denied_with_retry_after(free_plan):
    """A full free bucket admits 100 requests, the 101st waits about 0.6s."""
    state = new_bucket("tenant1", free_plan, T0)
    for _ in range(100):
        state, decision = consume(state, T0)
        assert decision.allowed

    state, decision = consume(state, T0)
    assert not decision.allowed
    assert decision.retry_after_seconds == pytest.approx(0.6)
    assert state.tokens == pytest.approx(0)


def test_denied_request_leaves_tokens(free_plan):
    state = new_bucket("tenant1", free_plan, T0).model_copy(update={"tokens": 0.5})
    state, decision = consume(state, T0, cost=1)
    assert not decision.allowed
    assert state.tokens == 0.5
    assert decision.retry_after_seconds == pytest.approx(0.3)


def test_refill_caps_at_capacity(free_plan):
    state = new_bucket("tenant1", free_plan, T0).model_copy(update={"tokens": 10})
    later = refill(state, T0 + timedelta(hours=1))
    assert later.tokens == 100
    assert later.last_refill_at == T0 + timedelta(hours=1)


def test_refill_is_proportional(free_plan):
    state = new_bucket("tenant1", free_plan, T0).model_copy(update={"tokens": 0})
    later = refill(state, T0 + timedelta(seconds=6))
    assert later.tokens == pytest.approx(10)


def test_refill_ignores_clock_going_backwards(free_plan):
    state = new_bucket("tenant1", free_plan, T0).model_copy(update={"tokens": 5})
    earlier = refill(state, T0 - timedelta(seconds=30))
    assert earlier.tokens == 5
    assert earlier.last_refill_at == T0


def test_tokens_stay_within_bounds(free_plan):
    state = new_bucket("tenant1", free_plan, T0)
    now = T0
    for step in range(500):
        now += timedelta(milliseconds=(step * 37) % 900)
        state, _ = consume(state, now, cost=1 + step % 3)
        assert 0 <= state.tokens <= state.capacity


def test_upgrade_keeps_tokens_and_raises_capacity(config):
    free_state = TenantRateState(
        tenant_id="tenant1",
        plan_id="free",
        tokens=20,
        capacity=100,
        refill_rate_per_second=100 / 60,
        last_refill_at=T0,
    )
    upgraded = apply_plan(free_state, config.get_plan("pro"), T0)
    assert upgraded.plan_id == "pro"
    assert upgraded.capacity == 600
    assert upgraded.refill_rate_per_second == 10
    assert upgraded.tokens == 20


def test_downgrade_clamps_tokens(config):
    pro_state = TenantRateState(
        tenant_id="tenant1",
        plan_id="pro",
        tokens=500,
        capacity=600,
        refill_rate_per_second=10,
        last_refill_at=T0,
    )
    downgraded = apply_plan(pro_state, config.get_plan("free"), T0)
    assert downgraded.capacity == 100
    assert downgraded.tokens == 100


@pytest.fixture
def limiter(config):
    return TenantRateLimiter(config, AsyncMock())


@pytest.mark.asyncio
async def test_try_acquire_uses_tenant_plan(limiter):
    decision = RateLimitDecision(allowed=True, remaining=599, capacity=600)
    with patch.object(limiter.store, "acquire", return_value=(None, decision)) as mock_acquire:
        result = await limiter.try_acquire("tenant1", "pro")

    assert result is decision
    tenant_id, plan, cost, _ = mock_acquire.call_args.args
    assert tenant_id == "tenant1"
    assert plan.plan_id == "pro"
    assert cost == 1


@pytest.mark.asyncio
async def test_try_acquire_unknown_plan_uses_default(limiter):
    decision = RateLimitDecision(allowed=True, remaining=99, capacity=100)
    with patch.object(limiter.store, "acquire", return_value=(None, decision)) as mock_acquire:
        await limiter.try_acquire("tenant1", "gold")

    assert mock_acquire.call_args.args[1].plan_id == "free"


@pytest.mark.asyncio
async def test_try_acquire_rejects_bad_cost(limiter):
    with patch.object(limiter.store, "acquire") as mock_acquire:
        with pytest.raises(ValidationError):
            await limiter.try_acquire("tenant1", "free", cost=0)
        with pytest.raises(ValidationError):
            await limiter.try_acquire("tenant1", "free", cost=101)

    mock_acquire.assert_not_called()
