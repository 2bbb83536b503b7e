import pytest

from docbatch.batches.models import Batch, BatchStatus, RowOutcome, RowResult
from docbatch.batches.repository import (
    InMemoryBatchRepository,
    JsonFileBatchRepository,
    SupabaseBatchRepository,
    create_repository,
)
from docbatch.config import Settings


@pytest.fixture(params=["memory", "file"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryBatchRepository()
    return JsonFileBatchRepository(str(tmp_path / "records"))


def _batch(**kwargs):
    return Batch(template_name="t.txt", data_name="d.csv", **kwargs)


def _outcome(n, ok=True):
    return RowOutcome(
        row_number=n,
        data={"n": n},
        outcome=RowResult.SUCCESS if ok else RowResult.FAILED,
        error=None if ok else "missing fields: x",
    )


async def test_save_get_and_update(repository):
    batch = _batch()
    await repository.save(batch)
    batch.status = BatchStatus.PARSING_DATA
    assert (await repository.get(batch.id)).status == BatchStatus.CREATED

    await repository.save(batch)
    assert (await repository.get(batch.id)).status == BatchStatus.PARSING_DATA
    assert await repository.get("missing") is None
    assert await repository.list_ids() == [batch.id]


async def test_outcomes_are_stored_in_row_order(repository):
    batch = _batch()
    await repository.save(batch)
    await repository.save_outcomes(batch.id, [_outcome(3), _outcome(1, ok=False), _outcome(2)])
    outcomes = await repository.get_outcomes(batch.id)
    assert [o.row_number for o in outcomes] == [1, 2, 3]
    assert outcomes[0].error == "missing fields: x"


async def test_delete_removes_batch_and_outcomes(repository):
    batch = _batch()
    await repository.save(batch)
    await repository.save_outcomes(batch.id, [_outcome(1)])
    await repository.delete(batch.id)
    assert await repository.get(batch.id) is None
    assert await repository.get_outcomes(batch.id) == []


def test_factory_picks_backend(tmp_path):
    assert isinstance(
        create_repository(Settings(batch_store="memory")), InMemoryBatchRepository
    )
    file_repo = create_repository(Settings(batch_store="file", data_dir=str(tmp_path)))
    assert isinstance(file_repo, JsonFileBatchRepository)


class _Query:
    """Minimal stand-in for the supabase query builder chain."""

    def __init__(self, table, log):
        self._table = table
        self._log = log

    def __getattr__(self, name):
        def call(*args, **kwargs):
            self._log.append((self._table, name, args))
            return self
        return call

    def execute(self):
        rows = [
            args[0] for table, name, args in self._log
            if table == self._table and name in ("upsert", "insert")
        ]
        data = rows[-1] if rows else []
        return type("Response", (), {"data": data if isinstance(data, list) else [data]})()


class _FakeClient:
    def __init__(self):
        self.log = []

    def table(self, name):
        return _Query(name, self.log)


async def test_supabase_repository_writes_tables():
    client = _FakeClient()
    repo = SupabaseBatchRepository(client=client)
    batch = _batch()
    await repo.save(batch)
    await repo.save_outcomes(batch.id, [_outcome(2), _outcome(1)])

    upserts = [args for table, name, args in client.log if name == "upsert"]
    assert upserts[0][0]["id"] == batch.id
    inserts = [args for table, name, args in client.log if name == "insert"]
    assert [row["row_number"] for row in inserts[0][0]] == [1, 2]
    assert all(row["batch_id"] == batch.id for row in inserts[0][0])

    loaded = await repo.get(batch.id)
    assert loaded.id == batch.id
