"""Periodic cleanup of finished jobs, expired batch files and stale snapshots."""

import asyncio
import logging
from datetime import timedelta
from typing import Dict

from docbatch.batches.progress import ProgressTracker
from docbatch.jobs.in_process_queue import InProcessQueue
from docbatch.storage.temp_results import TempResultStore

logger = logging.getLogger(__name__)

# Terminal snapshots stay readable this long so pollers see the final state
SNAPSHOT_TTL_SECONDS = 3600


async def run_housekeeping(
    queue: InProcessQueue,
    store: TempResultStore,
    tracker: ProgressTracker,
    job_retention_hours: int,
) -> Dict[str, int]:
    """One cleanup pass. Returns how many items of each kind were removed."""
    jobs_removed = await queue.cleanup_old_jobs(timedelta(hours=job_retention_hours))
    dirs_removed = await asyncio.to_thread(store.cleanup_expired)
    snapshots_removed = tracker.evict_older_than(SNAPSHOT_TTL_SECONDS)
    result = {
        "jobs": jobs_removed,
        "batch_dirs": dirs_removed,
        "snapshots": snapshots_removed,
    }
    if any(result.values()):
        logger.info("Housekeeping removed %s", result)
    return result


async def housekeeping_loop(
    queue: InProcessQueue,
    store: TempResultStore,
    tracker: ProgressTracker,
    job_retention_hours: int,
    interval_seconds: float,
) -> None:
    """Run ``run_housekeeping`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_housekeeping(queue, store, tracker, job_retention_hours)
        except Exception:
            logger.exception("Housekeeping pass failed")
