"""In-process job queue using asyncio.

Runs up to ``max_concurrent_jobs`` jobs at a time in background tasks,
retries failures with exponential backoff and writes every state change
through a JobStore so in-flight work survives a restart.
No external dependencies (Redis, Celery) needed.
"""

import asyncio
import inspect
import logging
import traceback
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from docbatch.errors import QueueSaturationError
from docbatch.jobs.dispatcher import JobDispatcher
from docbatch.jobs.models import JobPayload, JobPriority, JobRecord, JobStatus
from docbatch.jobs.persistence import JobStore

logger = logging.getLogger(__name__)

WorkerFn = Callable[[JobRecord], Awaitable[Any]]
FailureHook = Callable[[JobRecord], Any]


class InProcessQueue(JobDispatcher):
    """Local async job queue with bounded concurrency and two priority tiers."""

    def __init__(
        self,
        worker_fn: WorkerFn,
        store: Optional[JobStore] = None,
        max_concurrent_jobs: int = 3,
        max_queue_size: int = 100,
        max_retries: int = 3,
        tick_seconds: float = 1.0,
        backoff_unit: float = 1.0,
        shutdown_grace_seconds: float = 10.0,
        on_failed: Optional[FailureHook] = None,
    ):
        """
        worker_fn: async callable(job: JobRecord)
            Does the work for one job. Raising marks the attempt as failed.
        on_failed: callable(job), sync or async
            Invoked once a job has exhausted its retries.
        backoff_unit: seconds multiplied by 2**retry_count between attempts.
        """
        self._worker_fn = worker_fn
        self._store = store
        self._max_concurrent = max(1, max_concurrent_jobs)
        self._max_queue_size = max(1, max_queue_size)
        self._max_retries = max(0, max_retries)
        self._tick_seconds = tick_seconds
        self._backoff_unit = backoff_unit
        self._shutdown_grace = shutdown_grace_seconds
        self._on_failed = on_failed

        self._jobs: Dict[str, JobRecord] = {}
        self._pending: Dict[JobPriority, Deque[str]] = {
            JobPriority.HIGH: deque(),
            JobPriority.NORMAL: deque(),
        }
        self._active: Dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ensure_capacity(self) -> None:
        if self.pending_count() >= self._max_queue_size:
            raise QueueSaturationError(
                f"Job queue is full ({self._max_queue_size} pending jobs); retry later"
            )

    async def submit(
        self, payload: JobPayload, priority: JobPriority = JobPriority.NORMAL
    ) -> JobRecord:
        self.ensure_capacity()
        job = JobRecord(
            payload=payload,
            priority=priority,
            max_retries=self._max_retries,
        )
        self._jobs[job.id] = job
        self._persist(job)
        self._enqueue(job)
        logger.info("Job %s submitted (priority=%s)", job.id, priority.value)
        return job

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    async def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        queue = self._pending[job.priority]
        if job_id in queue:
            queue.remove(job_id)
        job.status = JobStatus.CANCELLED
        job.completed_at = datetime.utcnow()
        job.touch()
        self._persist(job)
        self._signal()
        logger.info("Job %s cancelled", job_id)
        return True

    async def retry(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return False
        job.status = JobStatus.PENDING
        job.retry_count = 0
        job.error = None
        job.progress = 0.0
        job.available_at = None
        job.started_at = None
        job.completed_at = None
        job.touch()
        self._persist(job)
        self._enqueue(job)
        logger.info("Job %s queued for manual retry", job_id)
        return True

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[JobRecord]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[offset:offset + limit]

    def update_progress(self, job_id: str, progress: float) -> None:
        job = self._jobs.get(job_id)
        if job is not None and job.status == JobStatus.PROCESSING:
            job.progress = min(100.0, max(0.0, progress))
            job.touch()

    def stats(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return {
            "total": len(self._jobs),
            **counts,
            "active_jobs": len(self._active),
            "queue_length": self.pending_count(),
            "max_concurrent": self._max_concurrent,
            "max_queue_size": self._max_queue_size,
        }

    def pending_count(self) -> int:
        return sum(len(q) for q in self._pending.values())

    def active_count(self) -> int:
        return len(self._active)

    def set_max_concurrent_jobs(self, value: int) -> None:
        self._max_concurrent = max(1, value)
        self._signal()

    async def cleanup_old_jobs(self, max_age: timedelta) -> int:
        """Forget finished jobs older than ``max_age``. Returns count removed.

        Failed jobs go too; retrying their batch later submits a fresh job.
        """
        cutoff = datetime.utcnow() - max_age
        removed = 0
        for job_id, job in list(self._jobs.items()):
            if job.status not in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED):
                continue
            if job.completed_at is None or job.completed_at >= cutoff:
                continue
            del self._jobs[job_id]
            if self._store is not None:
                self._store.delete(job_id)
            removed += 1
        return removed

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until nothing is pending or running."""
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    async def start(self) -> None:
        if self._running:
            return
        self._reload_persisted()
        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())

    async def stop(self) -> None:
        self._running = False
        self._signal()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._active:
            running = list(self._active.values())
            _, still_running = await asyncio.wait(running, timeout=self._shutdown_grace)
            for task in still_running:
                task.cancel()
            if still_running:
                # Interrupted jobs stay "processing" on disk and are reloaded
                await asyncio.gather(*still_running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def _scheduler_loop(self) -> None:
        """Start due jobs whenever a slot frees, a job arrives or the tick fires."""
        while self._running:
            self._wakeup.clear()
            try:
                self._dispatch_ready()
            except Exception:
                logger.exception("Scheduler pass failed")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_wait())
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def _dispatch_ready(self) -> None:
        now = datetime.utcnow()
        while len(self._active) < self._max_concurrent:
            job = self._pop_next_due(now)
            if job is None:
                break
            self._start_job(job)
        self._refresh_idle()

    def _pop_next_due(self, now: datetime) -> Optional[JobRecord]:
        for priority in (JobPriority.HIGH, JobPriority.NORMAL):
            queue = self._pending[priority]
            for job_id in list(queue):
                job = self._jobs.get(job_id)
                if job is None or job.status != JobStatus.PENDING:
                    queue.remove(job_id)
                    continue
                if job.is_due(now):
                    queue.remove(job_id)
                    return job
        return None

    def _next_wait(self) -> float:
        """Sleep until the tick or the earliest backoff expiry, whichever is first."""
        wait = self._tick_seconds
        if len(self._active) >= self._max_concurrent:
            return wait
        now = datetime.utcnow()
        for queue in self._pending.values():
            for job_id in queue:
                job = self._jobs.get(job_id)
                if job is None or job.available_at is None:
                    continue
                remaining = (job.available_at - now).total_seconds()
                if remaining > 0:
                    wait = min(wait, remaining)
        return wait

    def _start_job(self, job: JobRecord) -> None:
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.utcnow()
        job.available_at = None
        job.touch()
        self._persist(job)
        self._active[job.id] = asyncio.create_task(self._run_job(job))
        logger.info(
            "Job %s started (attempt %d/%d)",
            job.id, job.retry_count + 1, job.max_retries + 1,
        )

    async def _run_job(self, job: JobRecord) -> None:
        try:
            await self._worker_fn(job)
        except asyncio.CancelledError:
            logger.warning("Job %s interrupted", job.id)
            raise
        except Exception as e:
            await self._handle_failure(job, e)
        else:
            job.status = JobStatus.COMPLETED
            job.progress = 100.0
            job.error = None
            job.completed_at = datetime.utcnow()
            job.touch()
            self._persist(job)
            logger.info("Job %s completed", job.id)
        finally:
            self._active.pop(job.id, None)
            self._signal()

    async def _handle_failure(self, job: JobRecord, exc: Exception) -> None:
        job.error = f"{type(exc).__name__}: {exc}"
        job.touch()
        if job.retry_count < job.max_retries:
            job.retry_count += 1
            delay = self._backoff_unit * (2 ** job.retry_count)
            job.status = JobStatus.PENDING
            job.available_at = datetime.utcnow() + timedelta(seconds=delay)
            self._persist(job)
            self._pending[job.priority].append(job.id)
            logger.warning(
                "Job %s failed (%s); retry %d/%d in %.1fs",
                job.id, job.error, job.retry_count, job.max_retries, delay,
            )
            return

        job.status = JobStatus.FAILED
        job.completed_at = datetime.utcnow()
        self._persist(job)
        logger.error(
            "Job %s failed permanently after %d retries: %s\n%s",
            job.id, job.retry_count, job.error,
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
        if self._on_failed is not None:
            try:
                result = self._on_failed(job)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Failure hook raised for job %s", job.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enqueue(self, job: JobRecord) -> None:
        self._pending[job.priority].append(job.id)
        self._signal()

    def _signal(self) -> None:
        self._refresh_idle()
        self._wakeup.set()

    def _refresh_idle(self) -> None:
        if self._active or self.pending_count():
            self._idle.clear()
        else:
            self._idle.set()

    def _persist(self, job: JobRecord) -> None:
        if self._store is None:
            return
        try:
            self._store.save(job)
        except OSError:
            logger.exception("Failed to persist job %s", job.id)

    def _reload_persisted(self) -> None:
        if self._store is None:
            return
        for job in self._store.load_inflight():
            if job.id in self._jobs:
                continue
            if job.status == JobStatus.PROCESSING:
                logger.warning("Recovering interrupted job %s", job.id)
                job.status = JobStatus.PENDING
                job.started_at = None
                job.touch()
                self._persist(job)
            self._jobs[job.id] = job
            self._pending[job.priority].append(job.id)
            logger.info("Reloaded job %s from disk", job.id)
        self._refresh_idle()
