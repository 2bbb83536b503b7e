from datetime import datetime, timedelta

from docbatch.batches.models import Batch, BatchStatus
from docbatch.batches.progress import ProgressTracker, stage_percentage


def test_stage_weights():
    assert stage_percentage(BatchStatus.CREATED) == 0
    assert stage_percentage(BatchStatus.PARSING_DATA) == 10
    assert stage_percentage(BatchStatus.ANALYZING_TEMPLATE) == 20
    assert stage_percentage(BatchStatus.VALIDATING_ROWS) == 30
    assert stage_percentage(BatchStatus.GENERATING_DOCUMENTS) == 40
    assert stage_percentage(BatchStatus.CREATING_ARCHIVE) == 80
    assert stage_percentage(BatchStatus.SENDING_NOTIFICATION) == 90
    assert stage_percentage(BatchStatus.COMPLETED) == 100
    assert stage_percentage(BatchStatus.FAILED) is None


def test_generation_scales_between_40_and_80():
    assert stage_percentage(BatchStatus.GENERATING_DOCUMENTS, 0.5) == 60
    assert stage_percentage(BatchStatus.GENERATING_DOCUMENTS, 1.0) == 80
    assert stage_percentage(BatchStatus.GENERATING_DOCUMENTS, 2.0) == 80


def test_progress_never_decreases_until_reset():
    tracker = ProgressTracker()
    tracker.update("b1", BatchStatus.GENERATING_DOCUMENTS, fraction=0.75)
    snap = tracker.update("b1", BatchStatus.PARSING_DATA, message="again")
    assert snap.progress == 70
    assert snap.stage == BatchStatus.PARSING_DATA
    assert snap.message == "again"

    tracker.reset("b1")
    assert tracker.read("b1") is None
    assert tracker.update("b1", BatchStatus.PARSING_DATA).progress == 10


def test_failed_keeps_last_value():
    tracker = ProgressTracker()
    tracker.update("b1", BatchStatus.VALIDATING_ROWS)
    snap = tracker.update("b1", BatchStatus.FAILED, message="boom")
    assert snap.progress == 30
    assert snap.stage == BatchStatus.FAILED


def test_details_are_merged():
    tracker = ProgressTracker()
    tracker.update("b1", BatchStatus.PARSING_DATA, details={"total_rows": 3})
    snap = tracker.update("b1", BatchStatus.ANALYZING_TEMPLATE, details={"complexity": "simple"})
    assert snap.details == {"total_rows": 3, "complexity": "simple"}


def test_evict_older_than_only_drops_terminal_snapshots():
    tracker = ProgressTracker()
    tracker.update("done", BatchStatus.COMPLETED)
    tracker.update("running", BatchStatus.GENERATING_DOCUMENTS)
    old = datetime.utcnow() - timedelta(hours=2)
    for batch_id in ("done", "running"):
        tracker.read(batch_id).updated_at = old

    assert tracker.evict_older_than(60) == 1
    assert tracker.read("done") is None
    assert tracker.read("running") is not None


def test_rebuild_from_batch_record():
    tracker = ProgressTracker()
    batch = Batch(
        template_name="t.txt",
        data_name="d.csv",
        status=BatchStatus.GENERATING_DOCUMENTS,
        stage="Generated 2 of 4 rows",
        total_rows=4,
        completed_count=1,
        failed_count=1,
    )
    snap = tracker.rebuild(batch)
    assert snap.progress == 60
    assert snap.message == "Generated 2 of 4 rows"
    assert snap.details["completed_count"] == 1
