"""Batch record storage.

The orchestrator is the only writer. Three backends share one interface:

- ``InMemoryBatchRepository``: tests and throwaway deployments
- ``JsonFileBatchRepository``: one JSON document per batch plus one for its
  row outcomes, under ``<data_dir>/records``
- ``SupabaseBatchRepository``: ``document_batches`` and ``batch_row_outcomes``
  tables via the service-role client
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from docbatch.batches.models import Batch, RowOutcome
from docbatch.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class BatchRepository(ABC):
    """Durable store for Batch records and their Row Outcomes."""

    @abstractmethod
    async def get(self, batch_id: str) -> Optional[Batch]:
        ...

    @abstractmethod
    async def save(self, batch: Batch) -> None:
        """Insert or replace ``batch``."""
        ...

    @abstractmethod
    async def save_outcomes(self, batch_id: str, outcomes: List[RowOutcome]) -> None:
        """Replace the outcome list of a batch; stored sorted by row number."""
        ...

    @abstractmethod
    async def get_outcomes(self, batch_id: str) -> List[RowOutcome]:
        ...

    @abstractmethod
    async def delete(self, batch_id: str) -> None:
        ...

    @abstractmethod
    async def list_ids(self) -> List[str]:
        ...


def _sorted(outcomes: List[RowOutcome]) -> List[RowOutcome]:
    return sorted(outcomes, key=lambda o: o.row_number)


class InMemoryBatchRepository(BatchRepository):
    def __init__(self):
        self._batches: Dict[str, Batch] = {}
        self._outcomes: Dict[str, List[RowOutcome]] = {}

    async def get(self, batch_id: str) -> Optional[Batch]:
        batch = self._batches.get(batch_id)
        return batch.model_copy(deep=True) if batch else None

    async def save(self, batch: Batch) -> None:
        self._batches[batch.id] = batch.model_copy(deep=True)

    async def save_outcomes(self, batch_id: str, outcomes: List[RowOutcome]) -> None:
        self._outcomes[batch_id] = _sorted(outcomes)

    async def get_outcomes(self, batch_id: str) -> List[RowOutcome]:
        return list(self._outcomes.get(batch_id, []))

    async def delete(self, batch_id: str) -> None:
        self._batches.pop(batch_id, None)
        self._outcomes.pop(batch_id, None)

    async def list_ids(self) -> List[str]:
        return list(self._batches)


class JsonFileBatchRepository(BatchRepository):
    def __init__(self, records_dir: str):
        self._dir = records_dir
        os.makedirs(self._dir, exist_ok=True)

    def _batch_path(self, batch_id: str) -> str:
        return os.path.join(self._dir, f"{batch_id}.json")

    def _outcomes_path(self, batch_id: str) -> str:
        return os.path.join(self._dir, f"{batch_id}.rows.json")

    @staticmethod
    def _write(path: str, content: str) -> None:
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp_path, path)

    async def get(self, batch_id: str) -> Optional[Batch]:
        path = self._batch_path(batch_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return Batch.model_validate_json(fh.read())

    async def save(self, batch: Batch) -> None:
        self._write(self._batch_path(batch.id), batch.model_dump_json(indent=2))

    async def save_outcomes(self, batch_id: str, outcomes: List[RowOutcome]) -> None:
        payload = [o.model_dump(mode="json") for o in _sorted(outcomes)]
        self._write(self._outcomes_path(batch_id), json.dumps(payload, indent=2))

    async def get_outcomes(self, batch_id: str) -> List[RowOutcome]:
        path = self._outcomes_path(batch_id)
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as fh:
            return [RowOutcome.model_validate(item) for item in json.load(fh)]

    async def delete(self, batch_id: str) -> None:
        for path in (self._batch_path(batch_id), self._outcomes_path(batch_id)):
            if os.path.exists(path):
                os.remove(path)

    async def list_ids(self) -> List[str]:
        return [
            entry[: -len(".json")]
            for entry in sorted(os.listdir(self._dir))
            if entry.endswith(".json") and not entry.endswith(".rows.json")
        ]


class SupabaseBatchRepository(BatchRepository):
    BATCH_TABLE = "document_batches"
    OUTCOME_TABLE = "batch_row_outcomes"

    def __init__(self, client=None):
        if client is None:
            from docbatch.db.supabase_client import get_supabase
            client = get_supabase()
        self._client = client

    async def get(self, batch_id: str) -> Optional[Batch]:
        response = (
            self._client.table(self.BATCH_TABLE)
            .select("*")
            .eq("id", batch_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return Batch.model_validate(response.data[0])

    async def save(self, batch: Batch) -> None:
        self._client.table(self.BATCH_TABLE).upsert(
            batch.model_dump(mode="json")
        ).execute()

    async def save_outcomes(self, batch_id: str, outcomes: List[RowOutcome]) -> None:
        table = self._client.table(self.OUTCOME_TABLE)
        table.delete().eq("batch_id", batch_id).execute()
        rows = [
            {"batch_id": batch_id, **o.model_dump(mode="json")}
            for o in _sorted(outcomes)
        ]
        if rows:
            table.insert(rows).execute()

    async def get_outcomes(self, batch_id: str) -> List[RowOutcome]:
        response = (
            self._client.table(self.OUTCOME_TABLE)
            .select("row_number, data, outcome, output_reference, output_files, error")
            .eq("batch_id", batch_id)
            .order("row_number")
            .execute()
        )
        return [RowOutcome.model_validate(item) for item in response.data or []]

    async def delete(self, batch_id: str) -> None:
        self._client.table(self.OUTCOME_TABLE).delete().eq("batch_id", batch_id).execute()
        self._client.table(self.BATCH_TABLE).delete().eq("id", batch_id).execute()

    async def list_ids(self) -> List[str]:
        response = self._client.table(self.BATCH_TABLE).select("id").execute()
        return [item["id"] for item in response.data or []]


def create_repository(config: Optional[Settings] = None) -> BatchRepository:
    """Pick the backend named by ``batch_store``."""
    config = config or default_settings
    if config.batch_store == "memory":
        return InMemoryBatchRepository()
    if config.batch_store == "supabase":
        return SupabaseBatchRepository()
    if config.batch_store != "file":
        logger.warning("Unknown batch_store %r, using file storage", config.batch_store)
    return JsonFileBatchRepository(os.path.join(config.data_dir, "records"))
