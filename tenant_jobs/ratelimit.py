"""Per-tenant token bucket rate limiting.

Each tenant owns one row in ``tenant_rate_state``. A check locks only that
row, so calls for the same tenant serialize and calls for different tenants
never contend. Bucket parameters come from the tenant's plan on every call:
a plan change takes effect on the very next check.
"""

import logging
from datetime import datetime
from typing import Optional

import asyncpg

from tenant_jobs.config import PlanConfig, TenantJobsConfig
from tenant_jobs.errors import ValidationError
from tenant_jobs.models import RateLimitDecision, TenantRateState, utcnow


def refill(state: TenantRateState, now: datetime) -> TenantRateState:
    """Add the tokens accrued since ``last_refill_at``, up to capacity."""
    elapsed = (now - state.last_refill_at).total_seconds()
    if elapsed <= 0:
        # Clock skew between processes: never refill backwards
        return state
    tokens = min(state.capacity, state.tokens + elapsed * state.refill_rate_per_second)
    return state.model_copy(update={"tokens": tokens, "last_refill_at": now})


def apply_plan(state: TenantRateState, plan: PlanConfig, now: datetime) -> TenantRateState:
    """Re-parameterise a bucket for a new plan, keeping the tokens already accrued."""
    state = refill(state, now)
    return state.model_copy(
        update={
            "plan_id": plan.plan_id,
            "capacity": plan.rate_capacity,
            "refill_rate_per_second": plan.rate_refill_per_second,
            "tokens": min(state.tokens, plan.rate_capacity),
        }
    )


def consume(
    state: TenantRateState, now: datetime, cost: float = 1
) -> tuple[TenantRateState, RateLimitDecision]:
    """
    Refill the bucket, then take ``cost`` tokens if available.

    Returns the new state and the decision. A denied request leaves the
    tokens untouched and reports how long until ``cost`` tokens exist.
    """
    state = refill(state, now)

    if state.tokens >= cost:
        tokens = max(0.0, state.tokens - cost)
        state = state.model_copy(update={"tokens": tokens})
        return state, RateLimitDecision(
            allowed=True,
            retry_after_seconds=0.0,
            remaining=tokens,
            capacity=state.capacity,
        )

    retry_after = (cost - state.tokens) / state.refill_rate_per_second
    return state, RateLimitDecision(
        allowed=False,
        retry_after_seconds=retry_after,
        remaining=state.tokens,
        capacity=state.capacity,
    )


def new_bucket(tenant_id: str, plan: PlanConfig, now: datetime) -> TenantRateState:
    """A full bucket for a tenant seen for the first time."""
    return TenantRateState(
        tenant_id=tenant_id,
        plan_id=plan.plan_id,
        tokens=plan.rate_capacity,
        capacity=plan.rate_capacity,
        refill_rate_per_second=plan.rate_refill_per_second,
        last_refill_at=now,
    )


class RateLimitStore:
    """Database layer for token bucket rows."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def acquire(
        self, tenant_id: str, plan: PlanConfig, cost: float, now: datetime
    ) -> tuple[TenantRateState, RateLimitDecision]:
        """Run one token bucket check under the tenant's row lock."""
        initial = new_bucket(tenant_id, plan, now)

        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO tenant_rate_state (
                        tenant_id, plan_id, tokens, capacity,
                        refill_rate_per_second, last_refill_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (tenant_id) DO NOTHING
                    """,
                    initial.tenant_id,
                    initial.plan_id,
                    initial.tokens,
                    initial.capacity,
                    initial.refill_rate_per_second,
                    initial.last_refill_at,
                )

                row = await conn.fetchrow(
                    "SELECT * FROM tenant_rate_state WHERE tenant_id = $1 FOR UPDATE",
                    tenant_id,
                )
                state = self._row_to_state(row)

                if (
                    state.plan_id != plan.plan_id
                    or state.capacity != plan.rate_capacity
                    or state.refill_rate_per_second != plan.rate_refill_per_second
                ):
                    state = apply_plan(state, plan, now)

                state, decision = consume(state, now, cost)

                await conn.execute(
                    """
                    UPDATE tenant_rate_state
                    SET plan_id = $2,
                        tokens = $3,
                        capacity = $4,
                        refill_rate_per_second = $5,
                        last_refill_at = $6
                    WHERE tenant_id = $1
                    """,
                    state.tenant_id,
                    state.plan_id,
                    state.tokens,
                    state.capacity,
                    state.refill_rate_per_second,
                    state.last_refill_at,
                )

        return state, decision

    async def get_state(self, tenant_id: str) -> Optional[TenantRateState]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM tenant_rate_state WHERE tenant_id = $1", tenant_id
            )
        return self._row_to_state(row) if row else None

    async def delete(self, tenant_id: str) -> bool:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM tenant_rate_state WHERE tenant_id = $1", tenant_id
            )
        return result.endswith(" 1")

    def _row_to_state(self, row: asyncpg.Record) -> TenantRateState:
        return TenantRateState(
            tenant_id=row["tenant_id"],
            plan_id=row["plan_id"],
            tokens=row["tokens"],
            capacity=row["capacity"],
            refill_rate_per_second=row["refill_rate_per_second"],
            last_refill_at=row["last_refill_at"],
        )


class TenantRateLimiter:
    """Admission-time rate limiter keyed by tenant and plan."""

    def __init__(
        self,
        config: TenantJobsConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = RateLimitStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)

    async def try_acquire(
        self, tenant_id: str, plan_id: Optional[str], cost: float = 1
    ) -> RateLimitDecision:
        """
        Check and consume ``cost`` tokens from the tenant's bucket.

        Raises:
            ValidationError: If ``cost`` is not positive or can never fit in the bucket
        """
        plan = self.config.get_plan(plan_id)
        if cost <= 0:
            raise ValidationError(f"Rate limit cost must be positive, got {cost}")
        if cost > plan.rate_capacity:
            raise ValidationError(
                f"Cost {cost} exceeds the {plan.plan_id} plan bucket capacity {plan.rate_capacity}"
            )

        _, decision = await self.store.acquire(tenant_id, plan, cost, utcnow())

        if not decision.allowed:
            self.logger.info(
                f"Rate limited tenant {tenant_id} (plan {plan.plan_id}), "
                f"retry after {decision.retry_after_seconds:.2f}s"
            )
        return decision

    async def get_state(self, tenant_id: str) -> Optional[TenantRateState]:
        """Current bucket row, without refilling."""
        return await self.store.get_state(tenant_id)

    async def reset(self, tenant_id: str) -> None:
        """Drop a tenant's bucket (tenant offboarding)."""
        if await self.store.delete(tenant_id):
            self.logger.info(f"Removed rate limit state for tenant {tenant_id}")
