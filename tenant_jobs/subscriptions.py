"""Subscription storage and tenant plan resolution."""

import logging
from datetime import datetime
from typing import Optional

import asyncpg
from pydantic import BaseModel

from tenant_jobs.cache import CacheKeys, CacheLayer
from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.models import Subscription, SubscriptionStatus


class TenantPlan(BaseModel):
    """The plan a tenant is entitled to right now, and its billing period."""

    tenant_id: str
    plan_id: str
    status: Optional[SubscriptionStatus] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SubscriptionStore:
    """Database layer for subscription rows.

    Methods taking ``conn`` run inside the caller's transaction.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get(self, tenant_id: str) -> Optional[Subscription]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM subscriptions WHERE tenant_id = $1", tenant_id
            )
        return self._row_to_subscription(row) if row else None

    async def lock_for_update(
        self,
        conn: asyncpg.Connection,
        tenant_id: Optional[str],
        external_subscription_id: Optional[str],
    ) -> Optional[Subscription]:
        """Lock and return the subscription row by tenant, else by external id.

        With a tenant id the advisory lock is taken even when there is no row
        yet, so two events creating the same subscription run one at a time.
        """
        row = None
        if tenant_id:
            await conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext($1))", f"subscriptions:{tenant_id}"
            )
            row = await conn.fetchrow(
                "SELECT * FROM subscriptions WHERE tenant_id = $1 FOR UPDATE", tenant_id
            )
        elif external_subscription_id:
            row = await conn.fetchrow(
                """
                SELECT * FROM subscriptions
                WHERE external_subscription_id = $1
                ORDER BY updated_at DESC
                LIMIT 1
                FOR UPDATE
                """,
                external_subscription_id,
            )
        return self._row_to_subscription(row) if row else None

    async def upsert(self, conn: asyncpg.Connection, subscription: Subscription) -> None:
        await conn.execute(
            """
            INSERT INTO subscriptions (
                tenant_id, plan_id, external_subscription_id, status,
                current_period_start, current_period_end, last_event_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (tenant_id) DO UPDATE SET
                plan_id = EXCLUDED.plan_id,
                external_subscription_id = EXCLUDED.external_subscription_id,
                status = EXCLUDED.status,
                current_period_start = EXCLUDED.current_period_start,
                current_period_end = EXCLUDED.current_period_end,
                last_event_at = EXCLUDED.last_event_at,
                updated_at = EXCLUDED.updated_at
            """,
            subscription.tenant_id,
            subscription.plan_id,
            subscription.external_subscription_id,
            subscription.status.value,
            subscription.current_period_start,
            subscription.current_period_end,
            subscription.last_event_at,
            subscription.updated_at,
        )

    def _row_to_subscription(self, row: asyncpg.Record) -> Subscription:
        return Subscription(
            tenant_id=row["tenant_id"],
            plan_id=row["plan_id"],
            external_subscription_id=row["external_subscription_id"],
            status=SubscriptionStatus(row["status"]),
            current_period_start=row["current_period_start"],
            current_period_end=row["current_period_end"],
            last_event_at=row["last_event_at"],
            updated_at=row["updated_at"],
        )


class PlanResolver:
    """Resolve a tenant's effective plan through the cache.

    Tenants without a live subscription fall back to the default plan. Store
    failures propagate: callers reject the request rather than guessing.
    """

    def __init__(
        self,
        config: TenantJobsConfig,
        subscription_store: SubscriptionStore,
        cache: CacheLayer,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.subscription_store = subscription_store
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)

    async def resolve(self, tenant_id: str) -> TenantPlan:
        async def load():
            subscription = await self.subscription_store.get(tenant_id)
            return self._plan_for(tenant_id, subscription).model_dump(mode="json")

        data = await self.cache.get_or_load(
            CacheKeys.plan(tenant_id), self.config.get_cache_ttl("plan"), load
        )
        return TenantPlan.model_validate(data)

    async def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        async def load():
            subscription = await self.subscription_store.get(tenant_id)
            return subscription.model_dump(mode="json") if subscription else None

        data = await self.cache.get_or_load(
            CacheKeys.subscription(tenant_id),
            self.config.get_cache_ttl("subscription"),
            load,
        )
        return Subscription.model_validate(data) if data else None

    def _plan_for(self, tenant_id: str, subscription: Optional[Subscription]) -> TenantPlan:
        if subscription is None or not subscription.is_live:
            return TenantPlan(tenant_id=tenant_id, plan_id=self.config.default_plan)

        plan_id = subscription.plan_id
        if plan_id not in self.config.plans:
            self.logger.warning(
                f"Tenant {tenant_id} subscribes to unknown plan {plan_id}, "
                f"using {self.config.default_plan}"
            )
            plan_id = self.config.default_plan

        return TenantPlan(
            tenant_id=tenant_id,
            plan_id=plan_id,
            status=subscription.status,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
        )
