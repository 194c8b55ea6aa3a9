"""FastAPI router for the tenant jobs HTTP API."""

import logging
import math
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenant_jobs.errors import (
    AuthTokenError,
    InvalidEvent,
    InvalidSignature,
    JobNotFoundError,
    QuotaExceededError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from tenant_jobs.models import Job
from tenant_jobs.runtime import TenantJobsRuntime

logger = logging.getLogger(__name__)


class EnqueueJobRequest(BaseModel):
    """Request model for enqueueing a job."""

    queue: str
    type: str
    payload: Dict[str, Any]
    quota_type: Optional[str] = None
    quota_amount: int = Field(default=1, ge=1)
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)


class EnqueueJobResponse(BaseModel):
    """Response model for enqueueing a job."""

    job_id: str


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    queue_name: str
    tenant_id: str
    type: str
    status: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    available_at: Optional[str] = None
    locked_by: Optional[str] = None
    locked_until: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    progress: Dict[str, Any]
    cancel_requested: bool
    quota_type: Optional[str] = None
    quota_reserved: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None


class UsageResponse(BaseModel):
    quota_type: str
    used: int
    limit: int
    period_start: str
    period_end: str


class QuotaOverrideRequest(BaseModel):
    limit: int = Field(ge=-1)
    reason: Optional[str] = None
    set_by: Optional[str] = None


class QuotaOverrideResponse(BaseModel):
    tenant_id: str
    quota_type: str
    limit: int
    reason: Optional[str] = None
    set_by: Optional[str] = None


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str


def _bearer(authorization: Optional[str], token: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:]
    return token


def create_jobs_router(
    runtime_factory: Callable[[], TenantJobsRuntime],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the tenant jobs API.

    Tenant endpoints authenticate the caller with ``Authorization: Bearer``
    (or a ``token`` header) through the runtime's identity verifier. Operator
    endpoints under ``/admin`` require ``X-Tenant-Jobs-Token`` to equal
    ``auth_token`` and are closed when no token is configured.

    Args:
        runtime_factory: Callable that returns the process's TenantJobsRuntime
        auth_token: Operator token for the admin endpoints

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_runtime() -> TenantJobsRuntime:
        """Dependency to get the runtime."""
        return runtime_factory()

    async def current_tenant(
        authorization: Optional[str] = Header(None),
        token: Optional[str] = Header(None),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ) -> str:
        try:
            return await runtime.admission.authenticate(_bearer(authorization, token))
        except AuthTokenError as e:
            raise HTTPException(status_code=401, detail=str(e)) from e

    async def verify_operator(
        x_tenant_jobs_token: Optional[str] = Header(None, alias="X-Tenant-Jobs-Token")
    ) -> None:
        if not auth_token or x_tenant_jobs_token != auth_token:
            raise HTTPException(status_code=401, detail="Invalid or missing auth token")

    async def tenant_job(job_id: str, tenant_id: str, runtime: TenantJobsRuntime) -> Job:
        try:
            job_uuid = UUID(job_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Invalid job ID format") from e
        try:
            job = await runtime.job_service.get_job(job_uuid)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        if job.tenant_id != tenant_id:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job

    @router.post("/jobs/enqueue", response_model=EnqueueJobResponse)
    async def enqueue_job(
        request: EnqueueJobRequest,
        tenant_id: str = Depends(current_tenant),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Admit and enqueue a job for the calling tenant."""
        try:
            result = await runtime.admission.submit(
                tenant_id=tenant_id,
                queue_name=request.queue,
                type=request.type,
                payload=request.payload,
                quota_type=request.quota_type,
                quota_amount=request.quota_amount,
                delay=timedelta(seconds=request.delay_seconds) if request.delay_seconds else None,
                max_attempts=request.max_attempts,
            )
        except RateLimitedError as e:
            return JSONResponse(
                status_code=429,
                content={"detail": str(e), "retry_after_seconds": e.retry_after_seconds},
                headers={"Retry-After": str(max(1, math.ceil(e.retry_after_seconds)))},
            )
        except QuotaExceededError as e:
            raise HTTPException(status_code=402, detail=str(e)) from e
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error enqueueing job")
            raise HTTPException(status_code=500, detail="Internal server error") from e

        return JSONResponse(
            content=EnqueueJobResponse(job_id=str(result.job_id)).model_dump(),
            headers=result.rate_limit.headers(),
        )

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        tenant_id: str = Depends(current_tenant),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Get one of the calling tenant's jobs."""
        job = await tenant_job(job_id, tenant_id, runtime)
        return JobResponse(**job.to_dict())

    @router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
    async def cancel_job(
        job_id: str,
        tenant_id: str = Depends(current_tenant),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Cancel a job; a running job stops before its next message."""
        job = await tenant_job(job_id, tenant_id, runtime)
        job = await runtime.job_service.cancel(job.id)
        return JobResponse(**job.to_dict())

    @router.get("/jobs", response_model=List[JobResponse])
    async def list_jobs(
        queue: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        tenant_id: str = Depends(current_tenant),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """List the calling tenant's jobs."""
        jobs = await runtime.job_service.list_jobs(
            tenant_id=tenant_id, queue_name=queue, status=status, limit=limit
        )
        return [JobResponse(**job.to_dict()) for job in jobs]

    @router.get("/usage", response_model=List[UsageResponse])
    async def get_usage(
        tenant_id: str = Depends(current_tenant),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Current-period quota usage of the calling tenant."""
        usage = await runtime.quota_service.get_usage(tenant_id)
        return [
            UsageResponse(
                quota_type=quota_type,
                used=item.used,
                limit=await runtime.quota_service.get_effective_limit(tenant_id, quota_type),
                period_start=item.period_start.isoformat(),
                period_end=item.period_end.isoformat(),
            )
            for quota_type, item in usage.items()
        ]

    @router.get("/admin/dead-letters", response_model=List[JobResponse])
    async def list_dead_letters(
        queue: Optional[str] = Query(None),
        tenant_id: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        _: None = Depends(verify_operator),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Dead-lettered jobs for operator review."""
        jobs = await runtime.job_service.list_dead_letters(
            queue_name=queue, tenant_id=tenant_id, limit=limit
        )
        return [JobResponse(**job.to_dict()) for job in jobs]

    @router.post("/admin/dead-letters/{job_id}/retry", response_model=JobResponse)
    async def retry_dead_letter(
        job_id: UUID,
        _: None = Depends(verify_operator),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Requeue a dead-lettered job with a fresh attempt budget."""
        try:
            job = await runtime.job_service.retry_dead_letter(job_id)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except ValidationError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return JobResponse(**job.to_dict())

    @router.put(
        "/admin/quota-overrides/{tenant_id}/{quota_type}", response_model=QuotaOverrideResponse
    )
    async def set_quota_override(
        tenant_id: str,
        quota_type: str,
        request: QuotaOverrideRequest,
        _: None = Depends(verify_operator),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Replace a tenant's plan limit for one quota type."""
        override = await runtime.quota_service.set_quota_override(
            tenant_id, quota_type, request.limit, set_by=request.set_by, reason=request.reason
        )
        return QuotaOverrideResponse(**override.model_dump(exclude={"updated_at"}))

    @router.delete("/admin/quota-overrides/{tenant_id}/{quota_type}", status_code=204)
    async def remove_quota_override(
        tenant_id: str,
        quota_type: str,
        _: None = Depends(verify_operator),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Return a tenant's quota type to its plan limit."""
        if not await runtime.quota_service.remove_quota_override(tenant_id, quota_type):
            raise HTTPException(status_code=404, detail="No override for this quota type")

    @router.post("/webhooks/payments", response_model=WebhookResponse)
    async def payment_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
        runtime: TenantJobsRuntime = Depends(get_runtime),
    ):
        """Receive a payment processor event."""
        raw_body = await request.body()
        try:
            outcome = await runtime.reconciler.ingest(raw_body, stripe_signature)
        except InvalidSignature as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except InvalidEvent as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except TransientError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error processing payment webhook")
            raise HTTPException(status_code=500, detail="Internal server error") from e
        return WebhookResponse(outcome=outcome)

    return router
