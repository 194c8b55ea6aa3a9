"""Background jobs and tenant resource governance for a multi-tenant WhatsApp platform."""

from tenant_jobs.admission import AdmissionService, IdentityVerifier, TokenMapVerifier
from tenant_jobs.billing import WebhookReconciler, reconcile, verify_signature
from tenant_jobs.cache import CacheKeys, CacheLayer, MemoryCacheBackend, RedisCacheBackend
from tenant_jobs.config import PlanConfig, QueueConfig, RetryPolicy, TenantJobsConfig
from tenant_jobs.ddl import ALL_TABLES_DDL
from tenant_jobs.errors import (
    AuthTokenError,
    ConflictError,
    DuplicateEvent,
    ExhaustedError,
    InvalidEvent,
    InvalidQueue,
    InvalidSignature,
    JobCanceled,
    JobNotFoundError,
    LeaseExpired,
    PayloadTooLarge,
    QuotaExceededError,
    RateLimitedError,
    RemoteHttpError,
    TenantJobsError,
    TransientError,
    ValidationError,
)
from tenant_jobs.messaging_client import WuzapiClient
from tenant_jobs.models import Job, JobStatus, QuotaOverride, Subscription, SubscriptionStatus
from tenant_jobs.quota import QuotaService
from tenant_jobs.ratelimit import TenantRateLimiter
from tenant_jobs.reaper import run_reaper_loop
from tenant_jobs.registry import JobRegistry, job_registry
from tenant_jobs.runtime import TenantJobsRuntime
from tenant_jobs.service import JobService
from tenant_jobs.store import JobStore
from tenant_jobs.subscriptions import PlanResolver
from tenant_jobs.worker import JobContext, run_worker_loop

__version__ = "0.1.0"

__all__ = [
    "AdmissionService",
    "IdentityVerifier",
    "TokenMapVerifier",
    "WebhookReconciler",
    "reconcile",
    "verify_signature",
    "CacheKeys",
    "CacheLayer",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "PlanConfig",
    "QueueConfig",
    "RetryPolicy",
    "TenantJobsConfig",
    "ALL_TABLES_DDL",
    "AuthTokenError",
    "ConflictError",
    "DuplicateEvent",
    "ExhaustedError",
    "InvalidEvent",
    "InvalidQueue",
    "InvalidSignature",
    "JobCanceled",
    "JobNotFoundError",
    "LeaseExpired",
    "PayloadTooLarge",
    "QuotaExceededError",
    "RateLimitedError",
    "RemoteHttpError",
    "TenantJobsError",
    "TransientError",
    "ValidationError",
    "WuzapiClient",
    "Job",
    "JobStatus",
    "QuotaOverride",
    "Subscription",
    "SubscriptionStatus",
    "QuotaService",
    "TenantRateLimiter",
    "run_reaper_loop",
    "JobRegistry",
    "job_registry",
    "TenantJobsRuntime",
    "JobService",
    "JobStore",
    "PlanResolver",
    "JobContext",
    "run_worker_loop",
]
