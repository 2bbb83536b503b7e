"""Durable job state: one JSON file per job, keyed by job ID."""

import logging
import os
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from docbatch.jobs.models import JobRecord, JobStatus

logger = logging.getLogger(__name__)

_INFLIGHT = (JobStatus.PENDING, JobStatus.PROCESSING)


class JobStore:
    """Writes every job state change to ``<jobs_dir>/<job_id>.json``."""

    def __init__(self, jobs_dir: str):
        self._jobs_dir = jobs_dir
        os.makedirs(self._jobs_dir, exist_ok=True)

    def _path(self, job_id: str) -> str:
        return os.path.join(self._jobs_dir, f"{job_id}.json")

    def save(self, job: JobRecord) -> None:
        """Atomically replace the stored copy of ``job``."""
        path = self._path(job.id)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(job.model_dump_json(indent=2))
        os.replace(tmp_path, path)

    def load(self, job_id: str) -> Optional[JobRecord]:
        path = self._path(job_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return JobRecord.model_validate_json(fh.read())

    def delete(self, job_id: str) -> None:
        path = self._path(job_id)
        if os.path.exists(path):
            os.remove(path)

    def load_inflight(self) -> List[JobRecord]:
        """Return jobs left pending or processing, oldest first.

        Unreadable files are skipped with a warning so one corrupt record
        cannot block startup.
        """
        jobs: List[JobRecord] = []
        for entry in sorted(os.listdir(self._jobs_dir)):
            if not entry.endswith(".json"):
                continue
            path = os.path.join(self._jobs_dir, entry)
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    job = JobRecord.model_validate_json(fh.read())
            except (OSError, ValueError, PydanticValidationError) as exc:
                logger.warning("Skipping unreadable job file %s: %s", entry, exc)
                continue
            if job.status in _INFLIGHT:
                jobs.append(job)
        jobs.sort(key=lambda j: j.created_at)
        return jobs
