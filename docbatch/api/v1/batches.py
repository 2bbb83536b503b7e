"""Batch API: submit a template and data set, poll progress, download the archive.

  POST /batches                  multipart upload, starts a batch
  POST /batches/json             same, with rows already extracted
  GET  /batches/{id}             batch record
  GET  /batches/{id}/progress    live progress snapshot
  GET  /batches/{id}/rows        per-row outcomes in row order
  GET  /batches/{id}/download    ZIP of generated documents
  POST /batches/{id}/cancel      cancel a batch that has not started
  POST /batches/{id}/retry       re-run a failed batch or its failed rows
"""

import os
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from docbatch.batches.models import BatchUpload, JsonBatchRequest, SubmissionReceipt
from docbatch.config import settings
from docbatch.errors import (
    ArchiveNotReadyError,
    BatchNotFoundError,
    QueueSaturationError,
    ValidationError,
)
from docbatch.jobs.models import JobPriority

router = APIRouter()

# Wired in during lifespan (same pattern as jobs.py)
_orchestrator = None


def set_orchestrator(orchestrator):
    global _orchestrator
    _orchestrator = orchestrator


def _require_orchestrator():
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Batch service not ready")
    return _orchestrator


def _validation_detail(exc: ValidationError):
    if exc.details:
        return {"message": exc.message, "details": exc.details}
    return exc.message


async def _read_upload(file: UploadFile, max_bytes: int, label: str) -> bytes:
    """Read an upload in 1 MB chunks, rejecting anything over ``max_bytes``."""
    chunks = []
    total = 0
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"{label} too large (max {max_bytes // (1024 * 1024)} MB)",
            )
        chunks.append(chunk)
    return b"".join(chunks)


def _accepted(receipt: SubmissionReceipt) -> dict:
    return {
        "batch_id": receipt.batch_id,
        "job_id": receipt.job_id,
        "status": receipt.status.value,
        "estimated_duration": receipt.estimated_duration,
        "progress_url": f"/api/v1/batches/{receipt.batch_id}/progress",
        "status_url": f"/api/v1/batches/{receipt.batch_id}",
        "message": "Batch accepted. Poll progress_url for updates.",
    }


async def _submit(coro):
    try:
        return _accepted(await coro)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_validation_detail(exc))
    except QueueSaturationError as exc:
        raise HTTPException(status_code=429, detail=exc.message)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

@router.post("/batches", status_code=202)
async def create_batch(
    template: UploadFile = File(...),
    data: UploadFile = File(...),
    output_format: str = Form("pdf"),
    notify_email: Optional[str] = Form(None),
    priority: JobPriority = Form(JobPriority.NORMAL),
):
    """Accept a template file and a CSV/JSON data set and start a batch."""
    orchestrator = _require_orchestrator()
    template_content = await _read_upload(template, settings.max_template_bytes, "Template")
    data_content = await _read_upload(data, settings.max_data_bytes, "Data file")
    upload = BatchUpload(
        template_name=template.filename or "template.txt",
        template_content=template_content,
        data_name=data.filename or "data.csv",
        data_content=data_content,
        output_format=output_format,
        notify_email=notify_email,
        priority=priority,
    )
    return await _submit(orchestrator.submit(upload))


@router.post("/batches/json", status_code=202)
async def create_batch_from_json(request: JsonBatchRequest):
    """Start a batch from template text and already-parsed rows."""
    orchestrator = _require_orchestrator()
    return await _submit(orchestrator.submit_json(request))


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@router.get("/batches/{batch_id}")
async def get_batch(batch_id: str):
    orchestrator = _require_orchestrator()
    batch = await orchestrator.get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return batch


@router.get("/batches/{batch_id}/progress")
async def get_batch_progress(batch_id: str):
    orchestrator = _require_orchestrator()
    snapshot = orchestrator.get_progress(batch_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No progress tracked for this batch")
    return snapshot


@router.get("/batches/{batch_id}/rows")
async def get_batch_rows(batch_id: str):
    orchestrator = _require_orchestrator()
    try:
        outcomes = await orchestrator.get_row_outcomes(batch_id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    return {"batch_id": batch_id, "rows": outcomes}


@router.get("/batches/{batch_id}/download")
async def download_archive(batch_id: str):
    """Stream the ZIP of generated documents once the batch has completed."""
    orchestrator = _require_orchestrator()
    try:
        path = await orchestrator.archive_path_for(batch_id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    except ArchiveNotReadyError as exc:
        raise HTTPException(status_code=409, detail=exc.message)

    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Archive file not found")
    return FileResponse(
        path, media_type="application/zip", filename=f"{batch_id}_documents.zip"
    )


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------

@router.post("/batches/{batch_id}/cancel")
async def cancel_batch(batch_id: str):
    orchestrator = _require_orchestrator()
    try:
        cancelled = await orchestrator.cancel(batch_id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    if not cancelled:
        raise HTTPException(
            status_code=409,
            detail="Batch can only be cancelled while it is waiting in the queue",
        )
    return {"success": True, "message": "Batch cancelled"}


@router.post("/batches/{batch_id}/retry", status_code=202)
async def retry_batch(batch_id: str):
    orchestrator = _require_orchestrator()
    try:
        job = await orchestrator.retry_failed_rows(batch_id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    except QueueSaturationError as exc:
        raise HTTPException(status_code=429, detail=exc.message)
    if job is None:
        raise HTTPException(
            status_code=409,
            detail=(
                "Only failed batches, or completed batches with rows that "
                "failed to render, can be retried while their inputs are stored"
            ),
        )
    return {
        "batch_id": batch_id,
        "job_id": job.id,
        "status": "created",
        "message": "Batch re-queued",
    }
