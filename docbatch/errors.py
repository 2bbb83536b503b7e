"""Error taxonomy for batch generation."""

from typing import List, Optional


class DocBatchError(Exception):
    """Base class for errors raised by the generation pipeline."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DocBatchError):
    """Bad upload shape, malformed data set or zero usable rows.

    Fails a batch before any rendering; fixed by re-submitting.
    """

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.details = list(details or [])


class RowRenderError(DocBatchError):
    """A single row could not be rendered. Recorded, never fatal."""

    def __init__(self, row_number: int, message: str):
        super().__init__(f"row {row_number}: {message}")
        self.row_number = row_number
        self.reason = message


class ArchiveError(DocBatchError):
    """The output archive could not be produced."""


class NotificationError(DocBatchError):
    """Delivery of the completion notification failed."""


class BatchTimeoutError(DocBatchError, TimeoutError):
    """The batch exceeded its wall-clock budget."""

    def __init__(self, timeout_seconds: float):
        super().__init__("timeout")
        self.timeout_seconds = timeout_seconds


class QueueSaturationError(DocBatchError):
    """The job queue is at capacity; the caller should retry later."""


class BatchNotFoundError(DocBatchError):
    """No batch with the given ID is known."""


class ArchiveNotReadyError(DocBatchError):
    """The archive was requested before the batch completed."""
