"""Exception types for the tenant jobs library."""

from typing import Optional


class TenantJobsError(Exception):
    """Base exception for all tenant jobs errors."""

    pass


class TransientError(TenantJobsError):
    """Raised for temporary failures that should be retried (storage timeout, network blip)."""

    pass


class ValidationError(TenantJobsError):
    """Raised for malformed input; never retried."""

    pass


class InvalidQueue(ValidationError):
    """Raised when a job is enqueued to an unknown queue."""

    def __init__(self, queue_name: str, message: str = None):
        self.queue_name = queue_name
        if message is None:
            message = f"Unknown queue {queue_name}"
        super().__init__(message)


class PayloadTooLarge(ValidationError):
    """Raised when a job payload exceeds the queue's byte limit."""

    def __init__(self, size: int, limit: int, message: str = None):
        self.size = size
        self.limit = limit
        if message is None:
            message = f"Payload of {size} bytes exceeds limit of {limit} bytes"
        super().__init__(message)


class InvalidEvent(ValidationError):
    """Raised when a payment event cannot be parsed."""

    pass


class ConflictError(TenantJobsError):
    """Raised when an operation lost a race; callers treat it as success-but-skip."""

    pass


class LeaseExpired(ConflictError):
    """Raised when a worker no longer holds a valid lease on a job."""

    def __init__(self, job_id, worker_id: str, message: str = None):
        self.job_id = job_id
        self.worker_id = worker_id
        if message is None:
            message = f"Worker {worker_id} no longer holds the lease on job {job_id}"
        super().__init__(message)


class DuplicateEvent(ConflictError):
    """Raised when a payment event was already recorded in the ledger."""

    def __init__(
        self,
        external_event_id: str,
        outcome: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ):
        self.external_event_id = external_event_id
        self.outcome = outcome
        self.tenant_id = tenant_id
        super().__init__(f"Event {external_event_id} already processed ({outcome})")


class ExhaustedError(TenantJobsError):
    """Raised when a job has used all of its attempts and was dead-lettered."""

    def __init__(self, job_id, attempts: int, message: str = None):
        self.job_id = job_id
        self.attempts = attempts
        if message is None:
            message = f"Job {job_id} dead-lettered after {attempts} attempts"
        super().__init__(message)


class JobCanceled(TenantJobsError):
    """Raised inside a handler when an operator asked for its job to stop."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} was canceled"
        super().__init__(message)


class InvalidSignature(TenantJobsError):
    """Raised when a webhook signature does not verify."""

    pass


class QuotaExceededError(TenantJobsError):
    """Raised when a tenant's quota for a quota type is exhausted."""

    def __init__(
        self,
        tenant_id: str,
        quota_type: str,
        used: int = 0,
        limit: int = 0,
        message: str = None,
    ):
        self.tenant_id = tenant_id
        self.quota_type = quota_type
        self.used = used
        self.limit = limit
        if message is None:
            message = (
                f"Quota {quota_type} exhausted for tenant {tenant_id} ({used}/{limit}). "
                f"Upgrade your plan for higher limits."
            )
        super().__init__(message)


class RateLimitedError(TenantJobsError):
    """Raised when a tenant's token bucket cannot cover a request."""

    def __init__(self, tenant_id: str, retry_after_seconds: float, message: str = None):
        self.tenant_id = tenant_id
        self.retry_after_seconds = retry_after_seconds
        if message is None:
            message = f"Rate limit exceeded, try again in {retry_after_seconds:.1f} seconds"
        super().__init__(message)


class JobNotFoundError(TenantJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class AuthTokenError(TenantJobsError):
    """Raised when a tenant identity cannot be verified."""

    pass


class RemoteHttpError(TenantJobsError):
    """Raised when an HTTP request to the messaging API fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")

    @property
    def retryable(self) -> bool:
        """Network errors, throttling and 5xx are worth retrying."""
        return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500
