"""Job queue API: inspect and control queued batch executions."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from docbatch.errors import BatchNotFoundError, QueueSaturationError
from docbatch.jobs.models import JobRecord, JobStatus

router = APIRouter()

# These will be set by main.py during lifespan
_dispatcher = None
_orchestrator = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_orchestrator(orchestrator):
    global _orchestrator
    _orchestrator = orchestrator


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


def _job_summary(job: JobRecord) -> dict:
    response = {
        "job_id": job.id,
        "kind": job.payload.kind,
        "batch_id": job.payload.batch_id,
        "status": job.status.value,
        "priority": job.priority.value,
        "progress": job.progress,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "available_at": job.available_at.isoformat() if job.available_at else None,
    }
    if job.error:
        response["error"] = job.error
    return response


@router.get("/jobs")
async def list_jobs(
    status: Optional[JobStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List jobs, newest first."""
    dispatcher = _require_dispatcher()
    jobs = await dispatcher.list_jobs(status=status, limit=limit, offset=offset)
    return {"jobs": [_job_summary(j) for j in jobs], "limit": limit, "offset": offset}


@router.get("/jobs/stats")
async def job_stats():
    """Queue counters per status plus active and pending totals."""
    return _require_dispatcher().stats()


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Get the current status of a job."""
    job = await _require_dispatcher().get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_summary(job)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Cancel a pending job together with its batch."""
    dispatcher = _require_dispatcher()
    job = await dispatcher.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    if _orchestrator is not None:
        try:
            cancelled = await _orchestrator.cancel(job.payload.batch_id)
        except BatchNotFoundError:
            cancelled = await dispatcher.cancel(job_id)
    else:
        cancelled = await dispatcher.cancel(job_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail="Only pending jobs can be cancelled")
    return {"success": True, "message": "Job cancelled"}


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str):
    """Re-queue a failed job; its batch restarts from the first stage."""
    dispatcher = _require_dispatcher()
    job = await dispatcher.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != JobStatus.FAILED:
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")

    if _orchestrator is not None:
        try:
            retried = await _orchestrator.retry_failed_rows(job.payload.batch_id)
        except BatchNotFoundError:
            raise HTTPException(status_code=404, detail="Batch for this job not found")
        except QueueSaturationError as exc:
            raise HTTPException(status_code=429, detail=exc.message)
        if retried is None:
            raise HTTPException(status_code=409, detail="Batch for this job cannot be retried")
        return {"success": True, "job_id": retried.id, "message": "Job re-queued"}

    if not await dispatcher.retry(job_id):
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")
    return {"success": True, "job_id": job_id, "message": "Job re-queued"}
