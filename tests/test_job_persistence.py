import os

from docbatch.jobs.models import ExecuteBatchPayload, JobRecord, JobStatus
from docbatch.jobs.persistence import JobStore


def _job(status=JobStatus.PENDING, batch_id="b1"):
    return JobRecord(payload=ExecuteBatchPayload(batch_id=batch_id), status=status)


def test_save_and_load_roundtrip(tmp_path):
    store = JobStore(str(tmp_path))
    job = _job()
    store.save(job)

    loaded = store.load(job.id)
    assert loaded.id == job.id
    assert loaded.payload.kind == "execute_batch"
    assert loaded.payload.batch_id == "b1"
    assert not any(name.endswith(".tmp") for name in os.listdir(tmp_path))


def test_load_inflight_skips_finished_and_corrupt_files(tmp_path):
    store = JobStore(str(tmp_path))
    pending = _job(JobStatus.PENDING, "p")
    processing = _job(JobStatus.PROCESSING, "r")
    for job in (pending, processing, _job(JobStatus.COMPLETED), _job(JobStatus.FAILED),
                _job(JobStatus.CANCELLED)):
        store.save(job)
    (tmp_path / "garbage.json").write_text("{not json")

    inflight = store.load_inflight()
    assert {j.id for j in inflight} == {pending.id, processing.id}


def test_delete_is_idempotent(tmp_path):
    store = JobStore(str(tmp_path))
    job = _job()
    store.save(job)
    store.delete(job.id)
    store.delete(job.id)
    assert store.load(job.id) is None
