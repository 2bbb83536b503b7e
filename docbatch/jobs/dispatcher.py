"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from docbatch.jobs.models import JobPayload, JobPriority, JobRecord, JobStatus


class JobDispatcher(ABC):
    """Abstract interface for job dispatching."""

    @abstractmethod
    async def submit(
        self, payload: JobPayload, priority: JobPriority = JobPriority.NORMAL
    ) -> JobRecord:
        """Enqueue a task. Raises QueueSaturationError when full."""
        ...

    @abstractmethod
    def ensure_capacity(self) -> None:
        """Raise QueueSaturationError if a submit would be rejected."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        """Get current status of a job."""
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Cancel a pending job. Running jobs are never pre-empted."""
        ...

    @abstractmethod
    async def retry(self, job_id: str) -> bool:
        """Re-admit a permanently failed job with a fresh retry budget."""
        ...

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[JobRecord]:
        ...

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
