"""Configuration for the tenant jobs platform."""

import json
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class RetryPolicy(BaseModel):
    """Retry policy for a queue.

    Delay for attempt ``n`` (1-indexed) is ``backoff_base_seconds * 2^(n-1)``
    for the exponential strategy, capped at ``max_delay_seconds``.
    """

    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=10.0, gt=0)
    backoff_strategy: str = "exponential"
    max_delay_seconds: float = Field(default=3600.0, gt=0)
    jitter: float = Field(default=0.0, ge=0, lt=1)

    @field_validator("backoff_strategy")
    @classmethod
    def _known_strategy(cls, value: str) -> str:
        if value not in ("exponential", "linear", "constant"):
            raise ValueError(f"Unknown backoff strategy: {value}")
        return value


class QueueConfig(BaseModel):
    """Configuration for one named queue."""

    name: str
    concurrency: int = Field(default=10, ge=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    max_payload_bytes: int = Field(default=256 * 1024, gt=0)


class PlanConfig(BaseModel):
    """Rate and quota limits attached to a billing plan.

    A quota limit of ``-1`` means unbounded.
    """

    plan_id: str
    rate_capacity: float = Field(gt=0)
    rate_refill_per_second: float = Field(gt=0)
    quotas: Dict[str, int] = Field(default_factory=dict)

    def quota_limit(self, quota_type: str) -> int:
        """Limit for a quota type; types the plan does not mention are denied."""
        return self.quotas.get(quota_type, 0)


DEFAULT_QUEUES: Dict[str, QueueConfig] = {
    "campaigns": QueueConfig(name="campaigns", concurrency=5),
    "imports": QueueConfig(
        name="imports",
        concurrency=2,
        retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=30),
    ),
    "reports": QueueConfig(
        name="reports",
        concurrency=2,
        retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=30),
    ),
}

DEFAULT_PLANS: Dict[str, PlanConfig] = {
    "free": PlanConfig(
        plan_id="free",
        rate_capacity=100,
        rate_refill_per_second=100 / 60,
        quotas={
            "max_messages_per_day": 100,
            "max_messages_per_month": 1000,
            "max_campaigns": 5,
            "max_contact_imports": 5,
            "max_reports": 10,
        },
    ),
    "pro": PlanConfig(
        plan_id="pro",
        rate_capacity=600,
        rate_refill_per_second=10,
        quotas={
            "max_messages_per_day": 5000,
            "max_messages_per_month": 100000,
            "max_campaigns": 200,
            "max_contact_imports": 100,
            "max_reports": 500,
        },
    ),
    "enterprise": PlanConfig(
        plan_id="enterprise",
        rate_capacity=3000,
        rate_refill_per_second=50,
        quotas={
            "max_messages_per_day": -1,
            "max_messages_per_month": -1,
            "max_campaigns": -1,
            "max_contact_imports": -1,
            "max_reports": -1,
        },
    ),
}


class TenantJobsConfig:
    """Configuration object for tenant jobs."""

    def __init__(
        self,
        db_dsn: str,
        queues: Optional[Dict[str, QueueConfig]] = None,
        plans: Optional[Dict[str, PlanConfig]] = None,
        default_plan: str = "free",
        lease_seconds: int = 300,
        webhook_secret: Optional[str] = None,
        webhook_tolerance_seconds: int = 300,
        webhook_timeout_seconds: float = 10.0,
        redis_url: Optional[str] = None,
        cache_ttl_seconds: Optional[Dict[str, int]] = None,
        cache_max_entries: int = 10_000,
        quota_alert_threshold: float = 0.8,
        wuzapi_base_url: str = "https://wzapi.wasend.com.br",
        enqueue_auth_token: Optional[str] = None,
    ):
        self.db_dsn = db_dsn
        self.queues = dict(queues) if queues is not None else dict(DEFAULT_QUEUES)
        self.plans = dict(plans) if plans is not None else dict(DEFAULT_PLANS)
        if default_plan not in self.plans:
            raise ValueError(f"Default plan {default_plan} is not in the plan catalog")
        self.default_plan = default_plan
        self.lease_seconds = lease_seconds
        self.webhook_secret = webhook_secret
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self.webhook_timeout_seconds = webhook_timeout_seconds
        self.redis_url = redis_url
        self.cache_ttl_seconds = {
            "subscription": 300,
            "plan": 300,
            "quota": 60,
        }
        if cache_ttl_seconds:
            self.cache_ttl_seconds.update(cache_ttl_seconds)
        self.cache_max_entries = cache_max_entries
        if not 0 < quota_alert_threshold <= 1:
            raise ValueError("quota_alert_threshold must be in (0, 1]")
        self.quota_alert_threshold = quota_alert_threshold
        self.wuzapi_base_url = wuzapi_base_url
        self.enqueue_auth_token = enqueue_auth_token

    @classmethod
    def from_env(cls) -> "TenantJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("TENANT_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("TENANT_JOBS_DB_DSN environment variable is required")

        queues = None
        queues_str = os.getenv("TENANT_JOBS_QUEUES")
        if queues_str:
            raw = _load_json_env("TENANT_JOBS_QUEUES", queues_str)
            queues = {
                name: QueueConfig(name=name, **settings) for name, settings in raw.items()
            }

        plans = None
        plans_str = os.getenv("TENANT_JOBS_PLANS")
        if plans_str:
            raw = _load_json_env("TENANT_JOBS_PLANS", plans_str)
            plans = {
                plan_id: PlanConfig(plan_id=plan_id, **settings)
                for plan_id, settings in raw.items()
            }

        cache_ttls = None
        cache_ttls_str = os.getenv("TENANT_JOBS_CACHE_TTL_SECONDS")
        if cache_ttls_str:
            cache_ttls = _load_json_env("TENANT_JOBS_CACHE_TTL_SECONDS", cache_ttls_str)

        return cls(
            db_dsn=db_dsn,
            queues=queues,
            plans=plans,
            default_plan=os.getenv("TENANT_JOBS_DEFAULT_PLAN", "free"),
            lease_seconds=int(os.getenv("TENANT_JOBS_LEASE_SECONDS", "300")),
            webhook_secret=os.getenv("TENANT_JOBS_WEBHOOK_SECRET"),
            webhook_tolerance_seconds=int(
                os.getenv("TENANT_JOBS_WEBHOOK_TOLERANCE_SECONDS", "300")
            ),
            webhook_timeout_seconds=float(
                os.getenv("TENANT_JOBS_WEBHOOK_TIMEOUT_SECONDS", "10")
            ),
            redis_url=os.getenv("TENANT_JOBS_REDIS_URL"),
            cache_ttl_seconds=cache_ttls,
            cache_max_entries=int(os.getenv("TENANT_JOBS_CACHE_MAX_ENTRIES", "10000")),
            quota_alert_threshold=float(os.getenv("TENANT_JOBS_QUOTA_ALERT_THRESHOLD", "0.8")),
            wuzapi_base_url=os.getenv("TENANT_JOBS_WUZAPI_BASE_URL", "https://wzapi.wasend.com.br"),
            enqueue_auth_token=os.getenv("TENANT_JOBS_ENQUEUE_AUTH_TOKEN"),
        )

    def get_queue_config(self, queue_name: str) -> Optional[QueueConfig]:
        """Get configuration for a queue, or None if the queue is unknown."""
        return self.queues.get(queue_name)

    def get_plan(self, plan_id: Optional[str]) -> PlanConfig:
        """Get a plan, falling back to the default plan for unknown ids."""
        if plan_id and plan_id in self.plans:
            return self.plans[plan_id]
        return self.plans[self.default_plan]

    def get_cache_ttl(self, domain: str) -> int:
        """TTL in seconds for a cache key domain."""
        return self.cache_ttl_seconds.get(domain, 300)


def _load_json_env(name: str, value: str) -> Dict[str, Any]:
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {name}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"{name} must be a JSON object")
    return data
