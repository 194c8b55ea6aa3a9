"""Wiring of the services that share one database pool and one cache."""

import logging
from typing import Any, Optional

import asyncpg

from tenant_jobs.admission import AdmissionService, IdentityVerifier
from tenant_jobs.billing import WebhookReconciler
from tenant_jobs.cache import CacheBackend, CacheLayer, MemoryCacheBackend, RedisCacheBackend
from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.ddl import ALL_TABLES_DDL
from tenant_jobs.quota import QuotaService
from tenant_jobs.ratelimit import TenantRateLimiter
from tenant_jobs.service import JobService
from tenant_jobs.subscriptions import PlanResolver, SubscriptionStore


async def create_db_pool(config: TenantJobsConfig) -> asyncpg.Pool:
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


async def create_schema(db_pool: asyncpg.Pool) -> None:
    """Create all tables and indexes if they do not exist."""
    async with db_pool.acquire() as conn:
        await conn.execute(ALL_TABLES_DDL)


def create_cache_backend(config: TenantJobsConfig) -> CacheBackend:
    """Redis when ``redis_url`` is configured, otherwise in-process memory."""
    if config.redis_url:
        return RedisCacheBackend.from_url(config.redis_url)
    return MemoryCacheBackend(maxsize=config.cache_max_entries)


class TenantJobsRuntime:
    """All services of one process, built around a shared pool and cache."""

    def __init__(
        self,
        config: TenantJobsConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
        cache_backend: Optional[CacheBackend] = None,
        identity_verifier: Optional[IdentityVerifier] = None,
    ):
        self.config = config
        self.db_pool = db_pool
        self.logger = logger or logging.getLogger(__name__)

        if cache_backend is None:
            cache_backend = create_cache_backend(config)
        self.cache = CacheLayer(cache_backend, self.logger)
        self.subscription_store = SubscriptionStore(db_pool)
        self.plan_resolver = PlanResolver(config, self.subscription_store, self.cache, self.logger)
        self.quota_service = QuotaService(config, db_pool, self.cache, self.plan_resolver, self.logger)
        self.rate_limiter = TenantRateLimiter(config, db_pool, self.logger)
        self.job_service = JobService(config, db_pool, self.logger, quota_service=self.quota_service)
        self.admission = AdmissionService(
            self.job_service,
            self.rate_limiter,
            self.quota_service,
            self.plan_resolver,
            identity_verifier=identity_verifier,
            logger=self.logger,
        )
        self.reconciler = WebhookReconciler(config, db_pool, self.cache, self.logger)

    def handler_resources(self) -> dict[str, Any]:
        """Objects exposed to job handlers as ``ctx.resources``."""
        return {
            "rate_limiter": self.rate_limiter,
            "plan_resolver": self.plan_resolver,
            "quota_service": self.quota_service,
            "cache": self.cache,
        }
