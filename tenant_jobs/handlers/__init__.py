"""Built-in job handlers. Importing this package registers them on ``job_registry``."""

from tenant_jobs.handlers import campaigns  # noqa: F401
