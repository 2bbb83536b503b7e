"""Per-batch working directories with TTL-based cleanup.

Layout under the base directory::

    <batch_id>/inputs/   uploaded template and data set
    <batch_id>/rows/     rendered documents, one set per row
    <batch_id>/<batch_id>_documents.zip
"""

import logging
import os
import shutil
import time
from typing import Iterable, Optional

from docbatch.config import settings

logger = logging.getLogger(__name__)


class TempResultStore:
    """Manages batch working files with TTL-based cleanup."""

    def __init__(self, base_dir: Optional[str] = None, ttl_hours: int = 168):
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(settings.data_dir, "batches")
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def get_batch_dir(self, batch_id: str) -> str:
        """Get or create directory for a batch's files."""
        batch_dir = os.path.join(self._base_dir, batch_id)
        os.makedirs(batch_dir, exist_ok=True)
        return batch_dir

    def get_inputs_dir(self, batch_id: str) -> str:
        path = os.path.join(self.get_batch_dir(batch_id), "inputs")
        os.makedirs(path, exist_ok=True)
        return path

    def get_rows_dir(self, batch_id: str) -> str:
        path = os.path.join(self.get_batch_dir(batch_id), "rows")
        os.makedirs(path, exist_ok=True)
        return path

    def get_archive_path(self, batch_id: str) -> str:
        return os.path.join(self.get_batch_dir(batch_id), f"{batch_id}_documents.zip")

    def write_input(self, batch_id: str, filename: str, content: bytes) -> str:
        path = os.path.join(self.get_inputs_dir(batch_id), os.path.basename(filename))
        with open(path, "wb") as dst:
            dst.write(content)
        return path

    def read_input(self, batch_id: str, filename: str) -> bytes:
        path = os.path.join(self._base_dir, batch_id, "inputs", os.path.basename(filename))
        with open(path, "rb") as src:
            return src.read()

    def has_inputs(self, batch_id: str, filenames: Iterable[str]) -> bool:
        inputs = os.path.join(self._base_dir, batch_id, "inputs")
        return all(os.path.exists(os.path.join(inputs, os.path.basename(f))) for f in filenames)

    def relative_path(self, batch_id: str, path: str) -> str:
        return os.path.relpath(path, os.path.join(self._base_dir, batch_id))

    def resolve(self, batch_id: str, relative: str) -> str:
        return os.path.join(self._base_dir, batch_id, relative)

    def file_exists(self, batch_id: str, relative: str) -> bool:
        return os.path.exists(self.resolve(batch_id, relative))

    def remove_rows(self, batch_id: str) -> None:
        shutil.rmtree(os.path.join(self._base_dir, batch_id, "rows"), ignore_errors=True)

    def remove_inputs(self, batch_id: str) -> None:
        shutil.rmtree(os.path.join(self._base_dir, batch_id, "inputs"), ignore_errors=True)

    def remove_batch(self, batch_id: str) -> None:
        shutil.rmtree(os.path.join(self._base_dir, batch_id), ignore_errors=True)

    def cleanup_expired(self) -> int:
        """Remove batch directories older than TTL. Returns count of removed dirs."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            batch_dir = os.path.join(self._base_dir, entry)
            if not os.path.isdir(batch_dir):
                continue
            mtime = os.path.getmtime(batch_dir)
            if now - mtime > self._ttl_seconds:
                shutil.rmtree(batch_dir, ignore_errors=True)
                removed += 1
        if removed:
            logger.info("Removed %d expired batch directories", removed)
        return removed
