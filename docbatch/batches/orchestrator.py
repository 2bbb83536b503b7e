"""Batch orchestrator.

Accepts uploads, enqueues one ``execute_batch`` job per batch and, when the
queue runs that job, drives the batch through its fixed stage sequence:

    created -> parsing_data -> analyzing_template -> validating_rows
            -> generating_documents -> creating_archive
            -> sending_notification -> completed

Stage errors (DocBatchError) fail the batch and end the job normally.
Anything else escapes to the queue, which retries the whole batch with
backoff and calls ``handle_job_failure`` once retries are exhausted.

A completed batch with render failures can re-render just those rows
(``retry_failed_rows``). That run skips straight to generation, merges the
new documents into the existing archive and leaves the batch completed
whatever happens.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from docbatch.batches.models import (
    CANCELLABLE_STATUSES,
    Batch,
    BatchStatus,
    BatchUpload,
    JsonBatchRequest,
    RowOutcome,
    RowResult,
    SubmissionReceipt,
)
from docbatch.batches.progress import ProgressSnapshot, ProgressTracker
from docbatch.batches.repository import BatchRepository
from docbatch.config import Settings, settings as default_settings
from docbatch.errors import (
    ArchiveError,
    ArchiveNotReadyError,
    BatchNotFoundError,
    BatchTimeoutError,
    DocBatchError,
    RowRenderError,
    ValidationError,
)
from docbatch.jobs.dispatcher import JobDispatcher
from docbatch.jobs.models import ExecuteBatchPayload, JobRecord, JobStatus
from docbatch.notifications.notifier import BatchSummary, Notifier
from docbatch.rendering.base import DocumentRenderer, OutputFormat
from docbatch.storage.archive import build_archive, merge_into_archive
from docbatch.storage.temp_results import TempResultStore
from docbatch.templates.data_parser import SUPPORTED_DATA_EXTENSIONS, parse_data_set
from docbatch.templates.placeholders import Complexity, analyze_template
from docbatch.templates.row_validator import (
    MissingValuePolicy,
    ValidRow,
    validate_rows,
)
from docbatch.templates.template_text import extract_template_text, template_extension

logger = logging.getLogger(__name__)

_TEXT_TEMPLATE_EXTENSIONS = (".txt", ".md", ".html", ".htm")

_COMPLEXITY_FACTOR = {
    Complexity.SIMPLE: 1.0,
    Complexity.MODERATE: 1.25,
    Complexity.COMPLEX: 1.5,
    Complexity.VERY_COMPLEX: 2.0,
}


def estimate_duration(
    row_count: int,
    complexity: Optional[Complexity],
    seconds_per_document: float,
    output_format: OutputFormat = OutputFormat.PDF,
) -> float:
    """Rough wall-clock seconds for a batch, used only for the receipt."""
    factor = _COMPLEXITY_FACTOR.get(complexity, 1.0)
    per_row = seconds_per_document * factor * len(output_format.extensions())
    return round(max(1, row_count) * per_row, 1)


def _estimate_row_count(data_name: str, content: bytes) -> int:
    ext = os.path.splitext(data_name)[1].lower()
    if ext == ".json":
        try:
            rows = json.loads(content.decode("utf-8-sig"))
        except (UnicodeDecodeError, ValueError):
            return 1
        if isinstance(rows, dict):
            rows = rows.get("rows", [])
        return len(rows) if isinstance(rows, list) else 1
    lines = [line for line in content.splitlines() if line.strip()]
    return max(1, len(lines) - 1)


class BatchOrchestrator:
    """Owns every Batch record mutation."""

    def __init__(
        self,
        repository: BatchRepository,
        store: TempResultStore,
        renderer: DocumentRenderer,
        notifier: Notifier,
        tracker: Optional[ProgressTracker] = None,
        config: Optional[Settings] = None,
    ):
        self._repo = repository
        self._store = store
        self._renderer = renderer
        self._notifier = notifier
        self._tracker = tracker or ProgressTracker()
        self._config = config or default_settings
        self._queue: Optional[JobDispatcher] = None
        self._policy = (
            MissingValuePolicy.BLANK_IS_MISSING
            if self._config.blank_values_missing
            else MissingValuePolicy.NULL_ONLY
        )

    def attach_queue(self, queue: JobDispatcher) -> None:
        """Late-bind the queue, which itself needs ``execute`` as its worker."""
        self._queue = queue

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    @property
    def queue(self) -> JobDispatcher:
        if self._queue is None:
            raise RuntimeError("No job queue attached to the orchestrator")
        return self._queue

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, upload: BatchUpload) -> SubmissionReceipt:
        """Validate an upload, store its inputs and enqueue the batch.

        Raises ValidationError for a bad upload shape and
        QueueSaturationError when the queue is full. Nothing is stored in
        either case.
        """
        output_format = self._check_upload(upload)
        self.queue.ensure_capacity()

        template_text = None
        if template_extension(upload.template_name) in _TEXT_TEMPLATE_EXTENSIONS:
            template_text = extract_template_text(upload.template_name, upload.template_content)
        complexity = analyze_template(template_text).complexity if template_text else None
        estimated = estimate_duration(
            _estimate_row_count(upload.data_name, upload.data_content),
            complexity,
            self._config.seconds_per_document,
            output_format,
        )

        batch = Batch(
            output_format=output_format,
            template_name=os.path.basename(upload.template_name),
            data_name=os.path.basename(upload.data_name),
            notify_email=upload.notify_email or None,
            priority=upload.priority,
        )
        self._store.write_input(batch.id, batch.template_name, upload.template_content)
        self._store.write_input(batch.id, batch.data_name, upload.data_content)
        await self._repo.save(batch)
        self._tracker.update(batch.id, BatchStatus.CREATED, message=batch.stage)

        job = await self.queue.submit(
            ExecuteBatchPayload(batch_id=batch.id), priority=upload.priority
        )
        batch.job_id = job.id
        batch.touch()
        await self._repo.save(batch)
        logger.info(
            "Batch %s accepted (template=%s, data=%s, format=%s, job=%s)",
            batch.id, batch.template_name, batch.data_name,
            batch.output_format.value, job.id,
        )
        return SubmissionReceipt(
            batch_id=batch.id,
            job_id=job.id,
            status=batch.status,
            estimated_duration=estimated,
        )

    async def submit_json(self, request: JsonBatchRequest) -> SubmissionReceipt:
        """Submit a batch whose template text and rows are already extracted."""
        ext = template_extension(request.template_name)
        if ext not in _TEXT_TEMPLATE_EXTENSIONS:
            raise ValidationError(
                f"template_name must name a text template ({', '.join(_TEXT_TEMPLATE_EXTENSIONS)})"
            )
        if not request.data_rows:
            raise ValidationError("Data set contains no data rows")
        return await self.submit(
            BatchUpload(
                template_name=request.template_name,
                template_content=request.template_text.encode("utf-8"),
                data_name="rows.json",
                data_content=json.dumps(request.data_rows).encode("utf-8"),
                output_format=request.output_format,
                notify_email=request.notify_email,
                priority=request.priority,
            )
        )

    def _check_upload(self, upload: BatchUpload) -> OutputFormat:
        template_extension(upload.template_name)
        data_ext = os.path.splitext(upload.data_name or "")[1].lower()
        if data_ext not in SUPPORTED_DATA_EXTENSIONS:
            raise ValidationError(
                f"Invalid data format '{data_ext or upload.data_name}'. "
                f"Allowed: {', '.join(SUPPORTED_DATA_EXTENSIONS)}"
            )
        if not upload.template_content:
            raise ValidationError("Template file is empty")
        if not upload.data_content or not upload.data_content.strip():
            raise ValidationError("Data file is empty")
        if len(upload.template_content) > self._config.max_template_bytes:
            raise ValidationError(
                f"Template exceeds {self._config.max_template_bytes} bytes"
            )
        if len(upload.data_content) > self._config.max_data_bytes:
            raise ValidationError(f"Data file exceeds {self._config.max_data_bytes} bytes")
        if upload.notify_email and "@" not in upload.notify_email:
            raise ValidationError(f"Invalid notification email '{upload.notify_email}'")
        try:
            return OutputFormat(upload.output_format)
        except ValueError:
            raise ValidationError(
                f"Invalid output format '{upload.output_format}'. "
                f"Allowed: {', '.join(f.value for f in OutputFormat)}"
            )

    # ------------------------------------------------------------------
    # Execution (queue worker)
    # ------------------------------------------------------------------

    async def execute(self, job: JobRecord) -> None:
        """Queue worker: run every stage of the batch named by ``job``."""
        batch_id = job.payload.batch_id
        batch = await self._repo.get(batch_id)
        if batch is None:
            logger.warning("Job %s refers to unknown batch %s; skipping", job.id, batch_id)
            return
        if batch.status.is_terminal:
            logger.info("Batch %s already %s; skipping", batch_id, batch.status.value)
            return

        timeout = self._config.batch_timeout_seconds
        try:
            stages = self._retry_rows if batch.retrying_rows else self._run_stages
            await asyncio.wait_for(stages(batch, job), timeout=timeout)
        except asyncio.TimeoutError:
            await self._fail(batch_id, BatchTimeoutError(timeout).message)
        except DocBatchError as exc:
            await self._fail(batch_id, exc.message)
        finally:
            await self._cleanup_if_terminal(batch_id)

    async def _run_stages(self, batch: Batch, job: JobRecord) -> None:
        batch.started_at = datetime.utcnow()
        batch.retrying_rows = False
        batch.completed_at = None
        batch.total_rows = 0
        batch.completed_count = 0
        batch.failed_count = 0
        batch.archive_path = None
        batch.last_error = None
        await self._repo.save_outcomes(batch.id, [])

        # parsing_data
        await self._enter(batch, job, BatchStatus.PARSING_DATA, "Parsing data set")
        raw_data = await asyncio.to_thread(self._store.read_input, batch.id, batch.data_name)
        rows = await asyncio.to_thread(
            parse_data_set, batch.data_name, raw_data, self._config.max_rows
        )
        batch.total_rows = len(rows)
        await self._save(batch)

        # analyzing_template
        await self._enter(
            batch, job, BatchStatus.ANALYZING_TEMPLATE, "Analyzing template",
            details={"total_rows": batch.total_rows},
        )
        raw_template = await asyncio.to_thread(
            self._store.read_input, batch.id, batch.template_name
        )
        template_text = await asyncio.to_thread(
            extract_template_text, batch.template_name, raw_template
        )
        analysis = analyze_template(template_text)
        batch.required_fields = analysis.fields
        batch.complexity = analysis.complexity
        await self._save(batch)

        # validating_rows
        await self._enter(
            batch, job, BatchStatus.VALIDATING_ROWS, "Validating rows",
            details={
                "placeholder_count": analysis.placeholder_count,
                "complexity": analysis.complexity.value,
                "word_count": analysis.word_count,
                "required_fields": analysis.fields,
                "field_types": analysis.field_types,
            },
        )
        validation = validate_rows(rows, analysis.fields, self._policy)
        outcomes: List[RowOutcome] = [
            RowOutcome(
                row_number=row.row_number,
                data=row.data,
                outcome=RowResult.FAILED,
                error=row.reason,
                missing_fields=row.missing_fields,
            )
            for row in validation.invalid_rows
        ]
        batch.failed_count = len(outcomes)
        if not validation.has_valid_rows:
            await self._repo.save_outcomes(batch.id, outcomes)
            await self._save(batch)
            raise ValidationError(
                f"No valid rows: all {batch.total_rows} rows are missing required fields"
            )
        await self._save(batch)
        if validation.invalid_rows:
            logger.info(
                "Batch %s: %d of %d rows missing required fields",
                batch.id, len(validation.invalid_rows), batch.total_rows,
            )

        # generating_documents
        await self._enter(
            batch, job, BatchStatus.GENERATING_DOCUMENTS,
            f"Generating {len(validation.valid_rows)} documents",
            details={
                "valid_rows": len(validation.valid_rows),
                "invalid_rows": len(validation.invalid_rows),
            },
        )
        outcomes.extend(await self._generate(batch, job, template_text, validation.valid_rows))
        outcomes.sort(key=lambda o: o.row_number)
        await self._repo.save_outcomes(batch.id, outcomes)
        if batch.completed_count == 0:
            raise ArchiveError("no documents generated")

        # creating_archive
        await self._enter(batch, job, BatchStatus.CREATING_ARCHIVE, "Creating archive")
        archive_path = self._store.get_archive_path(batch.id)
        entries = [
            (o.row_number, self._store.resolve(batch.id, f))
            for o in outcomes
            if o.outcome == RowResult.SUCCESS
            for f in o.output_files
        ]
        await asyncio.to_thread(build_archive, archive_path, entries)
        batch.archive_path = self._store.relative_path(batch.id, archive_path)
        await self._save(batch)

        # sending_notification
        if batch.notify_email:
            await self._enter(
                batch, job, BatchStatus.SENDING_NOTIFICATION, "Sending notification"
            )
            await self._notify(batch)

        await self._complete(batch)

    async def _retry_rows(self, batch: Batch, job: JobRecord) -> None:
        """Re-render the failed rows of a completed batch."""
        batch.started_at = datetime.utcnow()
        batch.completed_at = None
        batch.last_error = None
        outcomes = await self._repo.get_outcomes(batch.id)
        retry = [o for o in outcomes if o.retryable]
        kept = [o for o in outcomes if not o.retryable]

        raw_template = await asyncio.to_thread(
            self._store.read_input, batch.id, batch.template_name
        )
        template_text = await asyncio.to_thread(
            extract_template_text, batch.template_name, raw_template
        )
        await self._enter(
            batch, job, BatchStatus.GENERATING_DOCUMENTS,
            f"Retrying {len(retry)} failed rows",
            details={"retry_rows": len(retry)},
        )
        rows = [ValidRow(row_number=o.row_number, data=dict(o.data)) for o in retry]
        fresh = await self._generate(batch, job, template_text, rows, retrying=True)
        entries = [
            (o.row_number, self._store.resolve(batch.id, f))
            for o in fresh
            if o.outcome == RowResult.SUCCESS
            for f in o.output_files
        ]
        if entries:
            await self._enter(batch, job, BatchStatus.CREATING_ARCHIVE, "Updating archive")
            archive_path = self._store.resolve(batch.id, batch.archive_path)
            await asyncio.to_thread(merge_into_archive, archive_path, entries)
        # Outcomes only change once the archive holds their documents
        merged = sorted(kept + fresh, key=lambda o: o.row_number)
        await self._repo.save_outcomes(batch.id, merged)
        if entries and batch.notify_email:
            await self._enter(
                batch, job, BatchStatus.SENDING_NOTIFICATION, "Sending notification"
            )
            await self._notify(batch)

        await self._complete(batch)

    async def _complete(self, batch: Batch) -> None:
        batch.status = BatchStatus.COMPLETED
        batch.retrying_rows = False
        batch.completed_at = datetime.utcnow()
        batch.stage = (
            f"Completed: {batch.completed_count} generated, {batch.failed_count} failed"
        )
        await self._save(batch)
        self._tracker.update(
            batch.id, BatchStatus.COMPLETED, message=batch.stage,
            details={
                "completed_count": batch.completed_count,
                "failed_count": batch.failed_count,
            },
        )
        logger.info(
            "Batch %s completed: %d/%d documents, %d failed",
            batch.id, batch.completed_count, batch.total_rows, batch.failed_count,
        )

    async def _generate(
        self,
        batch: Batch,
        job: JobRecord,
        template_text: str,
        rows: List[ValidRow],
        retrying: bool = False,
    ) -> List[RowOutcome]:
        """Render ``rows`` with at most ``max_rows_in_flight`` running at once.

        When ``retrying``, every row already counts as failed; a success
        moves it across to ``completed_count``.
        """
        semaphore = asyncio.Semaphore(max(1, self._config.max_rows_in_flight))
        rows_dir = self._store.get_rows_dir(batch.id)
        # Rows outside ``rows`` that are already settled
        settled = 0 if retrying else batch.total_rows - len(rows)
        total = len(rows) if retrying else batch.total_rows
        finished = 0

        async def render_row(row: ValidRow) -> RowOutcome:
            nonlocal finished
            async with semaphore:
                try:
                    rendered = await asyncio.to_thread(
                        self._renderer.render,
                        template_text,
                        row.data,
                        batch.output_format,
                        rows_dir,
                        f"row_{row.row_number:04d}",
                    )
                    if not rendered.files:
                        raise RowRenderError(row.row_number, "renderer produced no files")
                except Exception as exc:
                    error = exc if isinstance(exc, RowRenderError) else RowRenderError(
                        row.row_number, f"{type(exc).__name__}: {exc}"
                    )
                    logger.warning("Batch %s: %s", batch.id, error.message)
                    outcome = RowOutcome(
                        row_number=row.row_number,
                        data=row.data,
                        outcome=RowResult.FAILED,
                        error=error.reason,
                    )
                else:
                    files = [self._store.relative_path(batch.id, f) for f in rendered.files]
                    outcome = RowOutcome(
                        row_number=row.row_number,
                        data=row.data,
                        outcome=RowResult.SUCCESS,
                        output_reference=files[0],
                        output_files=files,
                    )
            finished += 1
            await self._record_row(batch, job, outcome, settled + finished, total, retrying)
            return outcome

        return list(await asyncio.gather(*(render_row(row) for row in rows)))

    async def _record_row(
        self,
        batch: Batch,
        job: JobRecord,
        outcome: RowOutcome,
        done: int,
        total: int,
        retrying: bool = False,
    ) -> None:
        if outcome.outcome == RowResult.SUCCESS:
            batch.completed_count += 1
            if retrying:
                batch.failed_count -= 1
        elif not retrying:
            batch.failed_count += 1
        batch.stage = f"Generated {done} of {total} rows"
        await self._save(batch)
        snapshot = self._tracker.update(
            batch.id,
            BatchStatus.GENERATING_DOCUMENTS,
            message=batch.stage,
            details={
                "completed_count": batch.completed_count,
                "failed_count": batch.failed_count,
            },
            fraction=done / total if total else None,
        )
        self._report_job_progress(job, snapshot)

    async def _notify(self, batch: Batch) -> None:
        summary = BatchSummary(
            batch_id=batch.id,
            total_rows=batch.total_rows,
            completed_count=batch.completed_count,
            failed_count=batch.failed_count,
            archive_ref=batch.archive_path,
            download_url=f"/api/v1/batches/{batch.id}/download",
        )
        try:
            await self._notifier.notify(batch.notify_email, summary)
        except Exception as exc:
            logger.warning("Batch %s: notification to %s failed: %s",
                           batch.id, batch.notify_email, exc)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def cancel(self, batch_id: str) -> bool:
        """Cancel a batch whose job has not started yet.

        Returns False once generation is under way; a running batch always
        runs to completion.
        """
        batch = await self._require(batch_id)
        if batch.status not in CANCELLABLE_STATUSES or not batch.job_id:
            return False
        job = await self.queue.get_status(batch.job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        if not await self.queue.cancel(batch.job_id):
            return False

        if batch.retrying_rows:
            # The earlier run's documents and archive stay valid
            await self._complete(batch)
            logger.info("Batch %s: row retry cancelled", batch.id)
            return True

        batch.status = BatchStatus.CANCELLED
        batch.stage = "Cancelled"
        batch.completed_at = datetime.utcnow()
        await self._save(batch)
        self._tracker.update(batch.id, BatchStatus.CANCELLED, message=batch.stage)
        await self._cleanup_if_terminal(batch.id)
        logger.info("Batch %s cancelled", batch.id)
        return True

    async def retry_failed_rows(self, batch_id: str) -> Optional[JobRecord]:
        """Retry what went wrong in a batch.

        A completed batch re-renders only the rows whose rendering failed;
        rows rejected for missing fields stay failed. A failed batch re-runs
        from the first stage. Returns the job that will do the work, or None
        when there is nothing to retry or the stored inputs are gone.
        """
        batch = await self._require(batch_id)
        if batch.status == BatchStatus.COMPLETED:
            return await self._requeue_failed_rows(batch)
        if batch.status != BatchStatus.FAILED:
            return None
        if not self._store.has_inputs(batch.id, [batch.template_name, batch.data_name]):
            logger.info("Batch %s cannot be retried: inputs are gone", batch.id)
            return None
        previous = await self.queue.get_status(batch.job_id) if batch.job_id else None
        reuse_job = previous is not None and previous.status == JobStatus.FAILED
        if not reuse_job:
            self.queue.ensure_capacity()

        batch.status = BatchStatus.CREATED
        batch.retrying_rows = False
        batch.stage = "Batch re-queued"
        batch.total_rows = 0
        batch.completed_count = 0
        batch.failed_count = 0
        batch.last_error = None
        batch.started_at = None
        batch.completed_at = None
        batch.archive_path = None
        await self._repo.save_outcomes(batch.id, [])
        await self._save(batch)
        self._tracker.reset(batch.id)
        self._tracker.update(batch.id, BatchStatus.CREATED, message=batch.stage)

        if reuse_job and await self.queue.retry(previous.id):
            job = previous
        else:
            job = await self.queue.submit(
                ExecuteBatchPayload(batch_id=batch.id), priority=batch.priority
            )
        batch.job_id = job.id
        await self._save(batch)
        logger.info("Batch %s re-queued as job %s", batch.id, job.id)
        return job

    async def _requeue_failed_rows(self, batch: Batch) -> Optional[JobRecord]:
        if batch.failed_count == 0 or not batch.archive_path:
            return None
        outcomes = await self._repo.get_outcomes(batch.id)
        retryable = sum(1 for o in outcomes if o.retryable)
        if retryable == 0:
            return None
        if not self._store.has_inputs(batch.id, [batch.template_name]):
            logger.info("Batch %s cannot retry rows: template is gone", batch.id)
            return None
        self.queue.ensure_capacity()

        batch.status = BatchStatus.CREATED
        batch.retrying_rows = True
        batch.stage = f"Retry of {retryable} failed rows queued"
        batch.last_error = None
        await self._save(batch)
        self._tracker.reset(batch.id)
        self._tracker.update(batch.id, BatchStatus.CREATED, message=batch.stage)

        job = await self.queue.submit(
            ExecuteBatchPayload(batch_id=batch.id), priority=batch.priority
        )
        batch.job_id = job.id
        await self._save(batch)
        logger.info("Batch %s: %d failed rows re-queued as job %s", batch.id, retryable, job.id)
        return job

    async def handle_job_failure(self, job: JobRecord) -> None:
        """Queue hook: the job for a batch exhausted its retries."""
        batch_id = job.payload.batch_id
        await self._fail(batch_id, job.error or "job failed")
        await self._cleanup_if_terminal(batch_id)

    async def recover(self) -> int:
        """Rebuild progress snapshots for unfinished batches after a restart.

        A batch whose job the queue no longer knows about is failed so it can
        be retried. Returns the number of batches still in flight.
        """
        in_flight = 0
        for batch_id in await self._repo.list_ids():
            batch = await self._repo.get(batch_id)
            if batch is None or batch.status.is_terminal:
                continue
            job = await self.queue.get_status(batch.job_id) if batch.job_id else None
            if job is None or job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                self._tracker.rebuild(batch)
                await self._fail(batch.id, "interrupted: job record lost")
                continue
            self._tracker.rebuild(batch)
            in_flight += 1
        if in_flight:
            logger.info("Recovered %d in-flight batches", in_flight)
        return in_flight

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        return await self._repo.get(batch_id)

    async def get_row_outcomes(self, batch_id: str) -> List[RowOutcome]:
        await self._require(batch_id)
        return await self._repo.get_outcomes(batch_id)

    def get_progress(self, batch_id: str) -> Optional[ProgressSnapshot]:
        return self._tracker.read(batch_id)

    async def archive_path_for(self, batch_id: str) -> str:
        """Absolute path of a completed batch's archive."""
        batch = await self._require(batch_id)
        if batch.status != BatchStatus.COMPLETED or not batch.archive_path:
            raise ArchiveNotReadyError(
                f"Batch {batch_id} is {batch.status.value}; archive not available"
            )
        return self._store.resolve(batch.id, batch.archive_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require(self, batch_id: str) -> Batch:
        batch = await self._repo.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return batch

    async def _save(self, batch: Batch) -> None:
        batch.touch()
        await self._repo.save(batch)

    async def _enter(
        self,
        batch: Batch,
        job: JobRecord,
        status: BatchStatus,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        batch.status = status
        batch.stage = message
        await self._save(batch)
        snapshot = self._tracker.update(batch.id, status, message=message, details=details)
        self._report_job_progress(job, snapshot)
        logger.info("Batch %s: %s", batch.id, message)

    def _report_job_progress(self, job: JobRecord, snapshot: ProgressSnapshot) -> None:
        update = getattr(self._queue, "update_progress", None)
        if update is not None:
            update(job.id, snapshot.progress)

    async def _fail(self, batch_id: str, reason: str) -> None:
        batch = await self._repo.get(batch_id)
        if batch is None or batch.status.is_terminal:
            return
        failed_at = batch.status
        if batch.retrying_rows and batch.archive_path:
            await self._abandon_row_retry(batch, failed_at, reason)
            return
        batch.status = BatchStatus.FAILED
        batch.last_error = reason
        batch.stage = f"Failed during {failed_at.value}: {reason}"
        batch.completed_at = datetime.utcnow()
        await self._save(batch)
        self._tracker.update(batch.id, BatchStatus.FAILED, message=batch.stage)
        logger.error("Batch %s failed during %s: %s", batch.id, failed_at.value, reason)

    async def _abandon_row_retry(
        self, batch: Batch, failed_at: BatchStatus, reason: str
    ) -> None:
        """A row retry failed as a whole: go back to the last completed state."""
        outcomes = await self._repo.get_outcomes(batch.id)
        batch.completed_count = sum(1 for o in outcomes if o.outcome == RowResult.SUCCESS)
        batch.failed_count = len(outcomes) - batch.completed_count
        await self._complete(batch)
        batch.last_error = reason
        batch.stage = f"Row retry failed during {failed_at.value}: {reason}"
        await self._save(batch)
        logger.error(
            "Batch %s: row retry failed during %s: %s", batch.id, failed_at.value, reason
        )

    async def _cleanup_if_terminal(self, batch_id: str) -> None:
        """Drop scratch files; keep inputs while something is left to retry."""
        batch = await self._repo.get(batch_id)
        if batch is None or not batch.status.is_terminal:
            return
        await asyncio.to_thread(self._store.remove_rows, batch_id)
        if batch.status != BatchStatus.COMPLETED:
            return
        if batch.failed_count:
            outcomes = await self._repo.get_outcomes(batch_id)
            if any(o.retryable for o in outcomes):
                return
        await asyncio.to_thread(self._store.remove_inputs, batch_id)
