"""Job record data model for async processing."""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, Field
import uuid


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"


class ExecuteBatchPayload(BaseModel):
    """Run every stage of one batch."""
    kind: Literal["execute_batch"] = "execute_batch"
    batch_id: str


# Tagged by ``kind``. Widen to Annotated[Union[...], Field(discriminator="kind")]
# once a second task kind exists.
JobPayload = ExecuteBatchPayload


class JobRecord(BaseModel):
    """Tracks the lifecycle of a queued unit of work."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.NORMAL
    progress: float = 0.0
    retry_count: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    available_at: Optional[datetime] = None

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()

    def is_due(self, now: datetime) -> bool:
        return self.available_at is None or self.available_at <= now
