"""Data models for jobs, tenant governance and billing state."""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job status values."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    DEAD = "dead"
    CANCELED = "canceled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.DEAD, JobStatus.CANCELED})


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        queue_name: str,
        tenant_id: str,
        type: str,
        status: JobStatus,
        payload: Dict[str, Any],
        attempts: int,
        max_attempts: int,
        available_at: datetime,
        locked_by: Optional[str] = None,
        locked_until: Optional[datetime] = None,
        last_error: Optional[Dict[str, Any]] = None,
        progress: Optional[Dict[str, Any]] = None,
        cancel_requested: bool = False,
        quota_type: Optional[str] = None,
        quota_reserved: int = 0,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ):
        self.id = id
        self.queue_name = queue_name
        self.tenant_id = tenant_id
        self.type = type
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.payload = payload
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.available_at = available_at
        self.locked_by = locked_by
        self.locked_until = locked_until
        self.last_error = last_error
        self.progress = progress or {}
        self.cancel_requested = cancel_requested
        self.quota_type = quota_type
        self.quota_reserved = quota_reserved
        self.created_at = created_at
        self.updated_at = updated_at
        self.finished_at = finished_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "queue_name": self.queue_name,
            "tenant_id": self.tenant_id,
            "type": self.type,
            "status": self.status.value,
            "payload": self.payload,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "available_at": self.available_at.isoformat() if self.available_at else None,
            "locked_by": self.locked_by,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
            "last_error": self.last_error,
            "progress": self.progress,
            "cancel_requested": self.cancel_requested,
            "quota_type": self.quota_type,
            "quota_reserved": self.quota_reserved,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.queue_name}/{self.type} {self.status.value}>"


class TenantRateState(BaseModel):
    """Token bucket state for one tenant."""

    tenant_id: str
    plan_id: str
    tokens: float
    capacity: float
    refill_rate_per_second: float
    last_refill_at: datetime


class QuotaUsage(BaseModel):
    """Usage counter for one tenant, quota type and period."""

    tenant_id: str
    quota_type: str
    used: int = 0
    period_start: datetime
    period_end: datetime


class SubscriptionStatus(str, Enum):
    """Closed set of subscription statuses."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Subscription(BaseModel):
    """Authoritative subscription state, mutated only by webhook reconciliation."""

    tenant_id: str
    plan_id: str
    external_subscription_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        """Whether the subscription still entitles the tenant to its plan."""
        return self.status != SubscriptionStatus.CANCELED


class WebhookEvent(BaseModel):
    """Idempotency ledger row."""

    external_event_id: str
    type: str
    tenant_id: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    outcome: Optional[str] = None


class CacheEntry(BaseModel):
    """A cached value with its expiry and the cache generation it was stored under."""

    key: str
    value: Any = None
    expires_at: float
    version: int = 0

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class RateLimitDecision(BaseModel):
    """Result of a token bucket check."""

    allowed: bool
    retry_after_seconds: float = 0.0
    remaining: float = 0.0
    capacity: float = 0.0

    def headers(self) -> Dict[str, str]:
        """HTTP headers for the decision."""
        if not self.allowed:
            return {"Retry-After": str(max(1, math.ceil(self.retry_after_seconds)))}
        return {
            "X-RateLimit-Limit": str(int(self.capacity)),
            "X-RateLimit-Remaining": str(int(self.remaining)),
        }


class QuotaDecision(BaseModel):
    """Result of a quota reservation."""

    allowed: bool
    quota_type: str
    used: int
    limit: int
    remaining: Optional[int] = Field(default=None)
    near_limit: bool = False


class QuotaOverride(BaseModel):
    """Per-tenant limit that replaces the plan limit of one quota type."""

    tenant_id: str
    quota_type: str
    limit: int = Field(ge=-1)
    reason: Optional[str] = None
    set_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class QuotaAlert(BaseModel):
    """How close a tenant is to one quota limit."""

    quota_type: str
    used: int
    limit: int
    percentage: int
    near_threshold: bool
