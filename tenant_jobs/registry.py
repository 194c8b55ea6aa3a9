"""Handlers for job types."""

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from tenant_jobs.worker import JobContext

JobHandler = Callable[["JobContext", dict[str, Any]], Awaitable[Any]]


class JobRegistry:
    """Maps a job ``type`` to the coroutine that executes it."""

    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}

    def handler(self, job_type: str):
        """
        Decorator to register the handler of a job type.

        Usage:
            @registry.handler("send_campaign")
            async def send_campaign(ctx, payload):
                ...
        """

        def decorator(func: JobHandler) -> JobHandler:
            self.register(job_type, func)
            return func

        return decorator

    def register(self, job_type: str, func: JobHandler) -> None:
        if job_type in self._handlers and self._handlers[job_type] is not func:
            raise ValueError(f"A handler for job type {job_type} is already registered")
        self._handlers[job_type] = func

    def get_handler(self, job_type: str) -> Optional[JobHandler]:
        return self._handlers.get(job_type)

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers


job_registry = JobRegistry()
