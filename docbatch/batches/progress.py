"""
In-memory progress snapshots for running batches.

Readers poll ``read``; the orchestrator is the only writer. The Batch record
stays authoritative, so a lost snapshot is rebuilt from it with ``rebuild``.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from docbatch.batches.models import Batch, BatchStatus

logger = logging.getLogger(__name__)

STAGE_WEIGHTS: Dict[BatchStatus, float] = {
    BatchStatus.CREATED: 0.0,
    BatchStatus.PARSING_DATA: 10.0,
    BatchStatus.ANALYZING_TEMPLATE: 20.0,
    BatchStatus.VALIDATING_ROWS: 30.0,
    BatchStatus.GENERATING_DOCUMENTS: 40.0,
    BatchStatus.CREATING_ARCHIVE: 80.0,
    BatchStatus.SENDING_NOTIFICATION: 90.0,
    BatchStatus.COMPLETED: 100.0,
}

GENERATION_START = STAGE_WEIGHTS[BatchStatus.GENERATING_DOCUMENTS]
GENERATION_END = STAGE_WEIGHTS[BatchStatus.CREATING_ARCHIVE]


class ProgressSnapshot(BaseModel):
    batch_id: str
    stage: BatchStatus
    message: str = ""
    progress: float = 0.0
    details: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


def stage_percentage(
    stage: BatchStatus, fraction: Optional[float] = None
) -> Optional[float]:
    """Percentage for ``stage``; None for stages that keep the last value."""
    if stage not in STAGE_WEIGHTS:
        return None
    if stage == BatchStatus.GENERATING_DOCUMENTS and fraction is not None:
        fraction = min(1.0, max(0.0, fraction))
        return GENERATION_START + (GENERATION_END - GENERATION_START) * fraction
    return STAGE_WEIGHTS[stage]


class ProgressTracker:
    """Keyed store of the latest ProgressSnapshot per batch."""

    def __init__(self):
        self._snapshots: Dict[str, ProgressSnapshot] = {}

    def update(
        self,
        batch_id: str,
        stage: BatchStatus,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        fraction: Optional[float] = None,
    ) -> ProgressSnapshot:
        """Record a stage change or intra-stage progress.

        ``fraction`` is the share of rows processed, only meaningful while
        generating. The percentage never moves backwards.
        """
        current = self._snapshots.get(batch_id)
        previous = current.progress if current else 0.0
        merged = dict(current.details) if current else {}
        if details:
            merged.update(details)

        computed = stage_percentage(stage, fraction)
        progress = previous if computed is None else max(previous, computed)

        snapshot = ProgressSnapshot(
            batch_id=batch_id,
            stage=stage,
            message=message if message is not None else stage.value.replace("_", " "),
            progress=round(progress, 2),
            details=merged,
        )
        self._snapshots[batch_id] = snapshot
        return snapshot

    def read(self, batch_id: str) -> Optional[ProgressSnapshot]:
        return self._snapshots.get(batch_id)

    def reset(self, batch_id: str) -> None:
        """Forget the snapshot so the next run starts at 0."""
        self._snapshots.pop(batch_id, None)

    def evict(self, batch_id: str) -> None:
        self._snapshots.pop(batch_id, None)

    def evict_older_than(self, seconds: float, terminal_only: bool = True) -> int:
        cutoff = datetime.utcnow() - timedelta(seconds=seconds)
        stale = [
            batch_id
            for batch_id, snap in self._snapshots.items()
            if snap.updated_at < cutoff
            and (not terminal_only or snap.stage.is_terminal)
        ]
        for batch_id in stale:
            del self._snapshots[batch_id]
        if stale:
            logger.debug("Evicted %d progress snapshots", len(stale))
        return len(stale)

    def rebuild(self, batch: Batch) -> ProgressSnapshot:
        """Recreate a snapshot from the authoritative Batch record."""
        fraction = None
        if batch.total_rows:
            fraction = (batch.completed_count + batch.failed_count) / batch.total_rows
        self._snapshots.pop(batch.id, None)
        return self.update(
            batch.id,
            batch.status,
            message=batch.stage,
            details={
                "total_rows": batch.total_rows,
                "completed_count": batch.completed_count,
                "failed_count": batch.failed_count,
            },
            fraction=fraction,
        )
