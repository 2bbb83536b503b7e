"""Completion notification collaborator."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class BatchSummary(BaseModel):
    batch_id: str
    total_rows: int
    completed_count: int
    failed_count: int
    archive_ref: Optional[str] = None
    download_url: Optional[str] = None


class Notifier(ABC):
    """Delivers a "documents ready" message. Failures raise NotificationError."""

    @abstractmethod
    async def notify(self, email: str, summary: BatchSummary) -> None:
        ...


class LoggingNotifier(Notifier):
    """Records the notification in the application log instead of sending it."""

    async def notify(self, email: str, summary: BatchSummary) -> None:
        logger.info(
            "Batch %s ready for %s: %d/%d documents generated, %d failed (%s)",
            summary.batch_id,
            email,
            summary.completed_count,
            summary.total_rows,
            summary.failed_count,
            summary.download_url or summary.archive_ref,
        )
