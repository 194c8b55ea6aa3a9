"""Quota accounting per tenant, quota type and billing period."""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

import asyncpg

from tenant_jobs.cache import CacheKeys, CacheLayer
from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.errors import ValidationError
from tenant_jobs.models import QuotaAlert, QuotaDecision, QuotaOverride, QuotaUsage, utcnow
from tenant_jobs.subscriptions import PlanResolver, TenantPlan

UNLIMITED = -1


def is_daily(quota_type: str) -> bool:
    return quota_type.endswith("_per_day")


def day_period(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def month_period(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def resolve_period(
    quota_type: str, tenant_plan: TenantPlan, now: datetime
) -> tuple[datetime, datetime]:
    """
    Period a quota counter belongs to.

    Per-day types use the UTC day. Other types follow the subscription's
    billing period when there is one, else the calendar month. A billing
    period stays current past its end until the processor reports the next
    one, so rollover follows the payment events rather than the wall clock.
    """
    if is_daily(quota_type):
        return day_period(now)
    if tenant_plan.period_start and tenant_plan.period_end and tenant_plan.period_start <= now:
        return tenant_plan.period_start, tenant_plan.period_end
    return month_period(now)


class QuotaStore:
    """Database layer for quota usage rows."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def reserve(
        self,
        tenant_id: str,
        quota_type: str,
        period_start: datetime,
        period_end: datetime,
        amount: int,
        limit: int,
    ) -> tuple[bool, int]:
        """
        Add ``amount`` to the period's counter if it stays within ``limit``.

        Returns ``(allowed, used)`` where ``used`` is the counter after the
        operation. The conditional UPDATE is the compare-and-set; concurrent
        reservations can never push the counter past the limit.
        """
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO quota_usage (tenant_id, quota_type, period_start, period_end, used)
                VALUES ($1, $2, $3, $4, 0)
                ON CONFLICT (tenant_id, quota_type, period_start) DO NOTHING
                """,
                tenant_id,
                quota_type,
                period_start,
                period_end,
            )

            used = await conn.fetchval(
                """
                UPDATE quota_usage
                SET used = used + $4, updated_at = NOW()
                WHERE tenant_id = $1
                  AND quota_type = $2
                  AND period_start = $3
                  AND ($5 < 0 OR used + $4 <= $5)
                RETURNING used
                """,
                tenant_id,
                quota_type,
                period_start,
                amount,
                limit,
            )
            if used is not None:
                return True, used

            used = await conn.fetchval(
                """
                SELECT used FROM quota_usage
                WHERE tenant_id = $1 AND quota_type = $2 AND period_start = $3
                """,
                tenant_id,
                quota_type,
                period_start,
            )
        return False, used or 0

    async def release(
        self, tenant_id: str, quota_type: str, period_start: datetime, amount: int
    ) -> Optional[int]:
        """Decrement a counter, never below zero. Returns the new value or None."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                UPDATE quota_usage
                SET used = GREATEST(used - $4, 0), updated_at = NOW()
                WHERE tenant_id = $1 AND quota_type = $2 AND period_start = $3
                RETURNING used
                """,
                tenant_id,
                quota_type,
                period_start,
                amount,
            )

    async def get_usage(
        self, tenant_id: str, quota_type: str, period_start: datetime
    ) -> Optional[QuotaUsage]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM quota_usage
                WHERE tenant_id = $1 AND quota_type = $2 AND period_start = $3
                """,
                tenant_id,
                quota_type,
                period_start,
            )
        return self._row_to_usage(row) if row else None

    async def list_history(self, tenant_id: str, quota_type: str, limit: int = 12) -> list[QuotaUsage]:
        """Past and current periods of a counter, newest first."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM quota_usage
                WHERE tenant_id = $1 AND quota_type = $2
                ORDER BY period_start DESC
                LIMIT $3
                """,
                tenant_id,
                quota_type,
                limit,
            )
        return [self._row_to_usage(row) for row in rows]

    async def get_override(self, tenant_id: str, quota_type: str) -> Optional[QuotaOverride]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM quota_overrides WHERE tenant_id = $1 AND quota_type = $2",
                tenant_id,
                quota_type,
            )
        return self._row_to_override(row) if row else None

    async def list_overrides(self, tenant_id: str) -> list[QuotaOverride]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM quota_overrides WHERE tenant_id = $1 ORDER BY quota_type",
                tenant_id,
            )
        return [self._row_to_override(row) for row in rows]

    async def set_override(
        self,
        tenant_id: str,
        quota_type: str,
        limit: int,
        reason: Optional[str] = None,
        set_by: Optional[str] = None,
    ) -> QuotaOverride:
        """Create or replace the override of one quota type."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO quota_overrides (tenant_id, quota_type, quota_limit, reason, set_by)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (tenant_id, quota_type) DO UPDATE
                SET quota_limit = EXCLUDED.quota_limit,
                    reason = EXCLUDED.reason,
                    set_by = EXCLUDED.set_by,
                    updated_at = NOW()
                RETURNING *
                """,
                tenant_id,
                quota_type,
                limit,
                reason,
                set_by,
            )
        return self._row_to_override(row)

    async def remove_override(self, tenant_id: str, quota_type: str) -> bool:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM quota_overrides WHERE tenant_id = $1 AND quota_type = $2",
                tenant_id,
                quota_type,
            )
        return result.split()[-1] != "0"

    async def open_period(
        self,
        conn: asyncpg.Connection,
        tenant_id: str,
        quota_types: Sequence[str],
        period_start: datetime,
        period_end: datetime,
    ) -> int:
        """
        Open fresh counters for a new billing period inside the caller's transaction.

        Rows of earlier periods are kept as they are for reporting.
        """
        if not quota_types:
            return 0
        result = await conn.execute(
            """
            INSERT INTO quota_usage (tenant_id, quota_type, period_start, period_end, used)
            SELECT $1, quota_type, $3, $4, 0
            FROM unnest($2::text[]) AS quota_type
            ON CONFLICT (tenant_id, quota_type, period_start) DO NOTHING
            """,
            tenant_id,
            list(quota_types),
            period_start,
            period_end,
        )
        return int(result.split()[-1])

    def _row_to_usage(self, row: asyncpg.Record) -> QuotaUsage:
        return QuotaUsage(
            tenant_id=row["tenant_id"],
            quota_type=row["quota_type"],
            used=row["used"],
            period_start=row["period_start"],
            period_end=row["period_end"],
        )

    def _row_to_override(self, row: asyncpg.Record) -> QuotaOverride:
        return QuotaOverride(
            tenant_id=row["tenant_id"],
            quota_type=row["quota_type"],
            limit=row["quota_limit"],
            reason=row["reason"],
            set_by=row["set_by"],
            updated_at=row["updated_at"],
        )


class QuotaService:
    """Check, reserve and release plan quotas."""

    def __init__(
        self,
        config: TenantJobsConfig,
        db_pool: asyncpg.Pool,
        cache: CacheLayer,
        plan_resolver: PlanResolver,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = QuotaStore(db_pool)
        self.cache = cache
        self.plan_resolver = plan_resolver
        self.logger = logger or logging.getLogger(__name__)

    async def current_period(
        self, tenant_id: str, quota_type: str, now: Optional[datetime] = None
    ) -> tuple[datetime, datetime]:
        tenant_plan = await self.plan_resolver.resolve(tenant_id)
        return resolve_period(quota_type, tenant_plan, now or utcnow())

    async def check_and_reserve(
        self, tenant_id: str, quota_type: str, amount: int = 1
    ) -> QuotaDecision:
        """
        Reserve ``amount`` units of a quota for the current period.

        Returns a denied decision when the reservation would exceed the plan
        limit; nothing is recorded in that case.
        """
        if amount <= 0:
            raise ValidationError(f"Quota amount must be positive, got {amount}")

        now = utcnow()
        tenant_plan = await self.plan_resolver.resolve(tenant_id)
        limit = await self._effective_limit(tenant_id, quota_type, tenant_plan)
        period_start, period_end = resolve_period(quota_type, tenant_plan, now)

        allowed, used = await self.store.reserve(
            tenant_id, quota_type, period_start, period_end, amount, limit
        )

        near_limit = self._near_limit(used, limit)
        if allowed:
            await self.cache.invalidate(CacheKeys.quota(tenant_id, quota_type))
            if near_limit and not self._near_limit(used - amount, limit):
                self.logger.warning(
                    f"Tenant {tenant_id} reached {used}/{limit} of {quota_type}"
                )
        else:
            self.logger.info(
                f"Quota {quota_type} denied for tenant {tenant_id}: "
                f"{used}+{amount} exceeds {limit} on plan {tenant_plan.plan_id}"
            )

        return QuotaDecision(
            allowed=allowed,
            quota_type=quota_type,
            used=used,
            limit=limit,
            remaining=None if limit == UNLIMITED else max(0, limit - used),
            near_limit=near_limit,
        )

    async def get_effective_limit(self, tenant_id: str, quota_type: str) -> int:
        """The tenant's override for a quota type, else its plan limit."""
        tenant_plan = await self.plan_resolver.resolve(tenant_id)
        return await self._effective_limit(tenant_id, quota_type, tenant_plan)

    async def set_quota_override(
        self,
        tenant_id: str,
        quota_type: str,
        limit: int,
        set_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> QuotaOverride:
        """Replace the plan limit of one quota type for one tenant.

        ``-1`` lifts the limit. Usage already recorded is kept.
        """
        if limit < UNLIMITED:
            raise ValidationError(f"Quota limit must be -1 or more, got {limit}")
        override = await self.store.set_override(tenant_id, quota_type, limit, reason, set_by)
        await self.cache.invalidate(CacheKeys.quota_override(tenant_id, quota_type))
        self.logger.info(
            f"Quota override {quota_type}={limit} set for tenant {tenant_id} by {set_by}: {reason}"
        )
        return override

    async def remove_quota_override(
        self, tenant_id: str, quota_type: str, removed_by: Optional[str] = None
    ) -> bool:
        """Return the quota type to its plan limit. False when there was no override."""
        removed = await self.store.remove_override(tenant_id, quota_type)
        await self.cache.invalidate(CacheKeys.quota_override(tenant_id, quota_type))
        if removed:
            self.logger.info(
                f"Quota override {quota_type} removed for tenant {tenant_id} by {removed_by}"
            )
        return removed

    async def check_alert_threshold(self, tenant_id: str, quota_type: str) -> QuotaAlert:
        """Whether current-period usage has reached the configured share of the limit."""
        tenant_plan = await self.plan_resolver.resolve(tenant_id)
        limit = await self._effective_limit(tenant_id, quota_type, tenant_plan)
        usage = await self._usage_for(tenant_id, quota_type, tenant_plan)
        return QuotaAlert(
            quota_type=quota_type,
            used=usage.used,
            limit=limit,
            percentage=round(usage.used * 100 / limit) if limit > 0 else 0,
            near_threshold=self._near_limit(usage.used, limit),
        )

    def _near_limit(self, used: int, limit: int) -> bool:
        return limit > 0 and used >= limit * self.config.quota_alert_threshold

    async def _effective_limit(
        self, tenant_id: str, quota_type: str, tenant_plan: TenantPlan
    ) -> int:
        async def load():
            override = await self.store.get_override(tenant_id, quota_type)
            return None if override is None else override.limit

        override_limit = await self.cache.get_or_load(
            CacheKeys.quota_override(tenant_id, quota_type),
            self.config.get_cache_ttl("quota"),
            load,
        )
        if override_limit is not None:
            return override_limit
        return self.config.get_plan(tenant_plan.plan_id).quota_limit(quota_type)

    async def release(self, tenant_id: str, quota_type: str, amount: int) -> None:
        """Give back ``amount`` units of the current period's counter."""
        if amount <= 0:
            return
        period_start, _ = await self.current_period(tenant_id, quota_type)
        used = await self.store.release(tenant_id, quota_type, period_start, amount)
        await self.cache.invalidate(CacheKeys.quota(tenant_id, quota_type))
        if used is None:
            self.logger.warning(
                f"No {quota_type} counter for tenant {tenant_id} in period {period_start}"
            )
        else:
            self.logger.info(f"Released {amount} {quota_type} for tenant {tenant_id}, now {used}")

    async def get_usage(self, tenant_id: str) -> dict[str, QuotaUsage]:
        """Current-period usage of every quota type on the tenant's plan."""
        tenant_plan = await self.plan_resolver.resolve(tenant_id)
        plan = self.config.get_plan(tenant_plan.plan_id)
        return {
            quota_type: await self._usage_for(tenant_id, quota_type, tenant_plan)
            for quota_type in plan.quotas
        }

    async def get_usage_for(self, tenant_id: str, quota_type: str) -> QuotaUsage:
        tenant_plan = await self.plan_resolver.resolve(tenant_id)
        return await self._usage_for(tenant_id, quota_type, tenant_plan)

    async def _usage_for(
        self, tenant_id: str, quota_type: str, tenant_plan: TenantPlan
    ) -> QuotaUsage:
        period_start, period_end = resolve_period(quota_type, tenant_plan, utcnow())

        async def load():
            usage = await self.store.get_usage(tenant_id, quota_type, period_start)
            if usage is None:
                usage = QuotaUsage(
                    tenant_id=tenant_id,
                    quota_type=quota_type,
                    used=0,
                    period_start=period_start,
                    period_end=period_end,
                )
            return usage.model_dump(mode="json")

        data = await self.cache.get_or_load(
            CacheKeys.quota(tenant_id, quota_type), self.config.get_cache_ttl("quota"), load
        )
        usage = QuotaUsage.model_validate(data)
        if usage.period_start != period_start:
            # Cached from an earlier period
            await self.cache.invalidate(CacheKeys.quota(tenant_id, quota_type))
            data = await self.cache.get_or_load(
                CacheKeys.quota(tenant_id, quota_type), self.config.get_cache_ttl("quota"), load
            )
            usage = QuotaUsage.model_validate(data)
        return usage
