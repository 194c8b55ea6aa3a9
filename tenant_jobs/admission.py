"""Admission of tenant work: identity, rate limit, quota, then enqueue."""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel

from tenant_jobs.errors import (
    AuthTokenError,
    QuotaExceededError,
    RateLimitedError,
)
from tenant_jobs.models import QuotaDecision, RateLimitDecision
from tenant_jobs.quota import QuotaService
from tenant_jobs.ratelimit import TenantRateLimiter
from tenant_jobs.service import JobService
from tenant_jobs.subscriptions import PlanResolver


class IdentityVerifier(ABC):
    """Turns a caller credential into a verified tenant id."""

    @abstractmethod
    async def verify(self, token: str) -> str:
        """Return the tenant id, or raise AuthTokenError."""


class TokenMapVerifier(IdentityVerifier):
    """Verifier backed by a fixed token to tenant mapping."""

    def __init__(self, tokens: Mapping[str, str]):
        self.tokens = dict(tokens)

    async def verify(self, token: str) -> str:
        tenant_id = self.tokens.get(token)
        if tenant_id is None:
            raise AuthTokenError("Unknown token")
        return tenant_id


class AdmissionResult(BaseModel):
    job_id: UUID
    rate_limit: RateLimitDecision
    quota: Optional[QuotaDecision] = None


class AdmissionService:
    """Gatekeeper in front of :meth:`JobService.enqueue`."""

    def __init__(
        self,
        job_service: JobService,
        rate_limiter: TenantRateLimiter,
        quota_service: QuotaService,
        plan_resolver: PlanResolver,
        identity_verifier: Optional[IdentityVerifier] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.job_service = job_service
        self.rate_limiter = rate_limiter
        self.quota_service = quota_service
        self.plan_resolver = plan_resolver
        self.identity_verifier = identity_verifier
        self.logger = logger or logging.getLogger(__name__)

    async def authenticate(self, token: Optional[str]) -> str:
        """
        Resolve a credential to a tenant id.

        Raises:
            AuthTokenError: If there is no token, no verifier, or verification fails for any reason
        """
        if not token:
            raise AuthTokenError("No token provided")
        if self.identity_verifier is None:
            raise AuthTokenError("Identity verification is not available")
        try:
            tenant_id = await self.identity_verifier.verify(token)
        except AuthTokenError:
            raise
        except Exception as e:
            self.logger.error(f"Identity verification failed: {e}", exc_info=True)
            raise AuthTokenError("Identity verification is not available") from e
        if not tenant_id:
            raise AuthTokenError("Token does not identify a tenant")
        return tenant_id

    async def submit(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        type: str,
        payload: dict[str, Any],
        quota_type: Optional[str] = None,
        quota_amount: int = 1,
        rate_cost: float = 1,
        delay: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
    ) -> AdmissionResult:
        """
        Admit one unit of tenant work.

        Raises:
            RateLimitedError: If the tenant's bucket cannot cover ``rate_cost``
            QuotaExceededError: If reserving ``quota_amount`` would exceed the plan
            ValidationError: If the queue or payload is rejected; any reservation is released
        """
        tenant_plan = await self.plan_resolver.resolve(tenant_id)

        rate_decision = await self.rate_limiter.try_acquire(
            tenant_id, tenant_plan.plan_id, rate_cost
        )
        if not rate_decision.allowed:
            raise RateLimitedError(tenant_id, rate_decision.retry_after_seconds)

        quota_decision = None
        if quota_type:
            quota_decision = await self.quota_service.check_and_reserve(
                tenant_id, quota_type, quota_amount
            )
            if not quota_decision.allowed:
                raise QuotaExceededError(
                    tenant_id, quota_type, quota_decision.used, quota_decision.limit
                )

        try:
            job_id = await self.job_service.enqueue(
                queue_name=queue_name,
                tenant_id=tenant_id,
                type=type,
                payload=payload,
                delay=delay,
                max_attempts=max_attempts,
                quota_type=quota_type,
                quota_reserved=quota_amount if quota_type else 0,
            )
        except Exception:
            if quota_type:
                await self._release_after_failed_enqueue(tenant_id, quota_type, quota_amount)
            raise

        return AdmissionResult(job_id=job_id, rate_limit=rate_decision, quota=quota_decision)

    async def _release_after_failed_enqueue(
        self, tenant_id: str, quota_type: str, amount: int
    ) -> None:
        try:
            await self.quota_service.release(tenant_id, quota_type, amount)
        except Exception as e:
            self.logger.error(
                f"Failed to release {amount} {quota_type} for tenant {tenant_id} "
                f"after a rejected enqueue: {e}",
                exc_info=True,
            )
