"""Package implementing the periodic job scheduler."""

from .scheduler import JobHandler, JobStats, Scheduler, retry_backoff

__all__ = ["JobHandler", "JobStats", "Scheduler", "retry_backoff"]
