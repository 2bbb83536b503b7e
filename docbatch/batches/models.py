"""Batch, row outcome and submission data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid

from docbatch.jobs.models import JobPriority
from docbatch.rendering.base import OutputFormat
from docbatch.templates.placeholders import Complexity


class BatchStatus(str, Enum):
    CREATED = "created"
    PARSING_DATA = "parsing_data"
    ANALYZING_TEMPLATE = "analyzing_template"
    VALIDATING_ROWS = "validating_rows"
    GENERATING_DOCUMENTS = "generating_documents"
    CREATING_ARCHIVE = "creating_archive"
    SENDING_NOTIFICATION = "sending_notification"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED}
)

# Statuses from which a still-pending batch may be cancelled
CANCELLABLE_STATUSES = frozenset({BatchStatus.CREATED, BatchStatus.PARSING_DATA})


class RowResult(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class RowOutcome(BaseModel):
    """What happened to one data row. Immutable once written."""
    row_number: int
    data: Dict[str, Any] = Field(default_factory=dict)
    outcome: RowResult
    output_reference: Optional[str] = None
    output_files: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    missing_fields: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def retryable(self) -> bool:
        """A render failure; rows rejected for missing fields never are."""
        return self.outcome == RowResult.FAILED and not self.missing_fields


class Batch(BaseModel):
    """One user submission and its aggregate state."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: BatchStatus = BatchStatus.CREATED
    stage: str = "Batch created"
    total_rows: int = 0
    completed_count: int = 0
    failed_count: int = 0
    output_format: OutputFormat = OutputFormat.PDF
    template_name: str
    data_name: str
    notify_email: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    job_id: Optional[str] = None
    # Set while only previously failed rows are being re-rendered
    retrying_rows: bool = False
    complexity: Optional[Complexity] = None
    required_fields: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    archive_path: Optional[str] = None
    last_error: Optional[str] = None

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()


class BatchUpload(BaseModel):
    """A submission as received from the client, before any parsing."""
    template_name: str
    template_content: bytes
    data_name: str
    data_content: bytes
    output_format: str = OutputFormat.PDF.value
    notify_email: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL


class JsonBatchRequest(BaseModel):
    """Submission with the template text and rows already extracted."""
    template_text: str
    template_name: str = "template.txt"
    data_rows: List[Dict[str, Any]]
    output_format: str = OutputFormat.PDF.value
    notify_email: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL


class SubmissionReceipt(BaseModel):
    batch_id: str
    job_id: str
    status: BatchStatus
    estimated_duration: float
