import asyncio
from datetime import datetime, timedelta

import pytest

from docbatch.errors import QueueSaturationError
from docbatch.jobs.in_process_queue import InProcessQueue
from docbatch.jobs.models import ExecuteBatchPayload, JobPriority, JobStatus
from docbatch.jobs.persistence import JobStore


def _payload(name="b1"):
    return ExecuteBatchPayload(batch_id=name)


async def test_job_completes():
    seen = []

    async def worker(job):
        seen.append(job.payload.batch_id)

    queue = InProcessQueue(worker, tick_seconds=0.05)
    await queue.start()
    try:
        job = await queue.submit(_payload())
        await queue.join(timeout=5)
        assert seen == ["b1"]
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100.0
        assert job.completed_at is not None
    finally:
        await queue.stop()


async def test_transient_failure_exhausts_retries_then_fails():
    attempts = []
    failed = []

    async def worker(job):
        attempts.append(job.retry_count)
        raise RuntimeError("transient")

    async def on_failed(job):
        failed.append(job.id)

    queue = InProcessQueue(
        worker, max_retries=3, tick_seconds=0.05, backoff_unit=0.01, on_failed=on_failed
    )
    await queue.start()
    try:
        job = await queue.submit(_payload())
        await queue.join(timeout=5)
        assert attempts == [0, 1, 2, 3]
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert job.error == "RuntimeError: transient"
        assert failed == [job.id]
    finally:
        await queue.stop()


async def test_success_on_final_attempt_completes():
    async def worker(job):
        if job.retry_count < 3:
            raise RuntimeError("not yet")

    failed = []
    queue = InProcessQueue(
        worker, max_retries=3, tick_seconds=0.05, backoff_unit=0.01,
        on_failed=failed.append,
    )
    await queue.start()
    try:
        job = await queue.submit(_payload())
        await queue.join(timeout=5)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 3
        assert failed == []
    finally:
        await queue.stop()


async def test_retry_backoff_doubles_with_retry_count():
    async def worker(job):
        raise RuntimeError("boom")

    queue = InProcessQueue(worker, max_retries=3, tick_seconds=0.05, backoff_unit=1.0)
    await queue.start()
    try:
        job = await queue.submit(_payload())
        for _ in range(100):
            if job.retry_count == 1 and job.status == JobStatus.PENDING:
                break
            await asyncio.sleep(0.01)
        assert job.status == JobStatus.PENDING
        delay = (job.available_at - job.updated_at).total_seconds()
        assert 1.9 <= delay <= 2.1
    finally:
        await queue.stop()


async def test_high_priority_runs_before_normal():
    order = []

    async def worker(job):
        order.append(job.payload.batch_id)

    queue = InProcessQueue(worker, max_concurrent_jobs=1, tick_seconds=0.05)
    await queue.submit(_payload("n1"))
    await queue.submit(_payload("n2"))
    await queue.submit(_payload("h1"), priority=JobPriority.HIGH)
    await queue.start()
    try:
        await queue.join(timeout=5)
        assert order == ["h1", "n1", "n2"]
    finally:
        await queue.stop()


async def test_concurrency_ceiling_of_two_with_five_jobs():
    running = 0
    peak = 0
    release = asyncio.Event()

    async def worker(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await release.wait()
        running -= 1

    queue = InProcessQueue(worker, max_concurrent_jobs=2, tick_seconds=0.05)
    await queue.start()
    try:
        jobs = [await queue.submit(_payload(f"b{i}")) for i in range(5)]
        await asyncio.sleep(0.2)
        statuses = [j.status for j in jobs]
        assert statuses.count(JobStatus.PROCESSING) == 2
        assert statuses.count(JobStatus.PENDING) == 3
        assert queue.stats()["active_jobs"] == 2

        release.set()
        await queue.join(timeout=5)
        assert peak == 2
        assert all(j.status == JobStatus.COMPLETED for j in jobs)
    finally:
        await queue.stop()


async def test_raising_concurrency_starts_waiting_jobs():
    release = asyncio.Event()

    async def worker(job):
        await release.wait()

    queue = InProcessQueue(worker, max_concurrent_jobs=1, tick_seconds=0.05)
    await queue.start()
    try:
        jobs = [await queue.submit(_payload(f"b{i}")) for i in range(3)]
        await asyncio.sleep(0.1)
        assert queue.active_count() == 1

        queue.set_max_concurrent_jobs(3)
        await asyncio.sleep(0.1)
        assert queue.active_count() == 3
        assert queue.stats()["max_concurrent"] == 3

        queue.set_max_concurrent_jobs(0)
        assert queue.stats()["max_concurrent"] == 1

        release.set()
        await queue.join(timeout=5)
        assert all(j.status == JobStatus.COMPLETED for j in jobs)
    finally:
        await queue.stop()


async def test_cancel_pending_job_and_refuse_running_one():
    release = asyncio.Event()

    async def worker(job):
        await release.wait()

    queue = InProcessQueue(worker, max_concurrent_jobs=1, tick_seconds=0.05)
    await queue.start()
    try:
        running = await queue.submit(_payload("running"))
        waiting = await queue.submit(_payload("waiting"))
        await asyncio.sleep(0.1)

        assert running.status == JobStatus.PROCESSING
        assert await queue.cancel(running.id) is False
        assert await queue.cancel(waiting.id) is True
        assert waiting.status == JobStatus.CANCELLED
        assert queue.pending_count() == 0

        release.set()
        await queue.join(timeout=5)
        assert running.status == JobStatus.COMPLETED
        assert waiting.status == JobStatus.CANCELLED
    finally:
        await queue.stop()


async def test_manual_retry_of_failed_job():
    calls = []

    async def worker(job):
        calls.append(job.id)
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    queue = InProcessQueue(worker, max_retries=0, tick_seconds=0.05)
    await queue.start()
    try:
        job = await queue.submit(_payload())
        await queue.join(timeout=5)
        assert job.status == JobStatus.FAILED

        assert await queue.retry(job.id) is True
        await queue.join(timeout=5)
        assert job.status == JobStatus.COMPLETED
        assert job.error is None
        assert await queue.retry(job.id) is False
    finally:
        await queue.stop()


async def test_submit_rejected_when_queue_is_full():
    async def worker(job):
        pass

    queue = InProcessQueue(worker, max_queue_size=2)
    await queue.submit(_payload("a"))
    await queue.submit(_payload("b"))
    with pytest.raises(QueueSaturationError):
        queue.ensure_capacity()
    with pytest.raises(QueueSaturationError):
        await queue.submit(_payload("c"))
    assert queue.stats()["pending"] == 2


async def test_list_jobs_filters_and_paginates():
    async def worker(job):
        pass

    queue = InProcessQueue(worker)
    first = await queue.submit(_payload("a"))
    await queue.submit(_payload("b"))
    await queue.cancel(first.id)

    pending = await queue.list_jobs(status=JobStatus.PENDING)
    assert [j.payload.batch_id for j in pending] == ["b"]
    assert len(await queue.list_jobs(limit=1)) == 1
    assert len(await queue.list_jobs(offset=2)) == 0


async def test_cleanup_old_jobs_removes_only_finished(tmp_path):
    async def worker(job):
        if job.payload.batch_id.startswith("bad"):
            raise RuntimeError("boom")

    store = JobStore(str(tmp_path))
    queue = InProcessQueue(worker, store=store, max_retries=0, tick_seconds=0.05)
    await queue.start()
    try:
        done = await queue.submit(_payload("done"))
        failed = await queue.submit(_payload("bad-old"))
        recent_failure = await queue.submit(_payload("bad-new"))
        await queue.join(timeout=5)
        assert failed.status == JobStatus.FAILED
        done.completed_at = datetime.utcnow() - timedelta(hours=48)
        failed.completed_at = datetime.utcnow() - timedelta(hours=48)

        assert await queue.cleanup_old_jobs(timedelta(hours=24)) == 2
        assert await queue.get_status(done.id) is None
        assert await queue.get_status(failed.id) is None
        assert store.load(done.id) is None
        assert store.load(failed.id) is None
        assert (await queue.get_status(recent_failure.id)).status == JobStatus.FAILED
    finally:
        await queue.stop()


async def test_persisted_jobs_are_reloaded_and_interrupted_ones_reset(tmp_path):
    store = JobStore(str(tmp_path))
    release = asyncio.Event()

    async def blocking_worker(job):
        await release.wait()

    first = InProcessQueue(
        blocking_worker, store=store, max_concurrent_jobs=1,
        tick_seconds=0.05, shutdown_grace_seconds=0.1,
    )
    await first.start()
    interrupted = await first.submit(_payload("interrupted"))
    waiting = await first.submit(_payload("waiting"))
    await asyncio.sleep(0.1)
    assert interrupted.status == JobStatus.PROCESSING
    await first.stop()

    assert store.load(interrupted.id).status == JobStatus.PROCESSING

    seen = []

    async def worker(job):
        seen.append(job.payload.batch_id)

    second = InProcessQueue(worker, store=store, max_concurrent_jobs=1, tick_seconds=0.05)
    await second.start()
    try:
        await second.join(timeout=5)
        assert sorted(seen) == ["interrupted", "waiting"]
        assert (await second.get_status(interrupted.id)).status == JobStatus.COMPLETED
        assert store.load(waiting.id).status == JobStatus.COMPLETED
    finally:
        await second.stop()
