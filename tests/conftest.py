"""Shared fixtures: temp-dir backed stores, a fake renderer and recording notifiers."""

import os
import threading
from typing import Any, Dict, Iterable, List, Optional

import pytest

from docbatch.batches.orchestrator import BatchOrchestrator
from docbatch.batches.progress import ProgressTracker
from docbatch.batches.repository import InMemoryBatchRepository
from docbatch.config import Settings
from docbatch.errors import NotificationError
from docbatch.jobs.in_process_queue import InProcessQueue
from docbatch.jobs.persistence import JobStore
from docbatch.notifications.notifier import BatchSummary, Notifier
from docbatch.rendering.base import DocumentRenderer, OutputFormat, RenderedDocument
from docbatch.storage.temp_results import TempResultStore
from docbatch.templates.placeholders import substitute


class FakeRenderer(DocumentRenderer):
    """Writes the substituted text to ``<stem>.<ext>``.

    ``fail_rows`` holds row numbers that raise; ``fail_all`` makes every row
    raise. ``delays`` overrides ``delay`` per row number. Tracks the largest
    number of renders running at the same time and the order they finish in.
    """

    def __init__(
        self,
        fail_rows: Iterable[int] = (),
        fail_all: bool = False,
        delay: float = 0.0,
        delays: Optional[Dict[int, float]] = None,
    ):
        self.fail_rows = set(fail_rows)
        self.fail_all = fail_all
        self.delay = delay
        self.delays = dict(delays or {})
        self.rendered: List[str] = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()
        self._gate = threading.Event()

    def render(
        self,
        template_text: str,
        row: Dict[str, Any],
        output_format: OutputFormat,
        out_dir: str,
        stem: str,
    ) -> RenderedDocument:
        row_number = int(stem.rsplit("_", 1)[-1])
        with self._lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            delay = self.delays.get(row_number, self.delay)
            if delay:
                self._gate.wait(delay)
            if self.fail_all or row_number in self.fail_rows:
                raise RuntimeError(f"cannot render row {row_number}")
            text = substitute(template_text, row)
            files = []
            for ext in output_format.extensions():
                path = os.path.join(out_dir, f"{stem}.{ext}")
                with open(path, "w", encoding="utf-8") as fh:
                    fh.write(text)
                files.append(path)
            with self._lock:
                self.rendered.append(stem)
            return RenderedDocument(files=files)
        finally:
            with self._lock:
                self._in_flight -= 1


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[tuple] = []

    async def notify(self, email: str, summary: BatchSummary) -> None:
        self.sent.append((email, summary))


class FailingNotifier(Notifier):
    def __init__(self):
        self.attempts = 0

    async def notify(self, email: str, summary: BatchSummary) -> None:
        self.attempts += 1
        raise NotificationError("smtp unavailable")


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        data_dir=str(tmp_path / "data"),
        batch_store="memory",
        max_concurrent_jobs=3,
        max_queue_size=100,
        max_retries=3,
        queue_tick_seconds=0.05,
        shutdown_grace_seconds=1.0,
        max_rows_in_flight=4,
        batch_timeout_seconds=30.0,
    )
    values.update(overrides)
    return Settings(**values)


class Services:
    """An orchestrator wired to a running queue, as the app lifespan builds it."""

    def __init__(
        self,
        tmp_path,
        renderer: Optional[DocumentRenderer] = None,
        notifier: Optional[Notifier] = None,
        tracker: Optional[ProgressTracker] = None,
        backoff_unit: float = 0.01,
        **overrides,
    ):
        self.config = make_settings(tmp_path, **overrides)
        self.store = TempResultStore(
            base_dir=os.path.join(self.config.data_dir, "batches"), ttl_hours=1
        )
        self.repository = InMemoryBatchRepository()
        self.tracker = tracker or ProgressTracker()
        self.renderer = renderer or FakeRenderer()
        self.notifier = notifier or RecordingNotifier()
        self.orchestrator = BatchOrchestrator(
            repository=self.repository,
            store=self.store,
            renderer=self.renderer,
            notifier=self.notifier,
            tracker=self.tracker,
            config=self.config,
        )
        self.queue = InProcessQueue(
            worker_fn=self.orchestrator.execute,
            store=JobStore(self.config.resolved_jobs_dir()),
            max_concurrent_jobs=self.config.max_concurrent_jobs,
            max_queue_size=self.config.max_queue_size,
            max_retries=self.config.max_retries,
            tick_seconds=self.config.queue_tick_seconds,
            backoff_unit=backoff_unit,
            shutdown_grace_seconds=self.config.shutdown_grace_seconds,
            on_failed=self.orchestrator.handle_job_failure,
        )
        self.orchestrator.attach_queue(self.queue)


@pytest.fixture
def fake_renderer():
    return FakeRenderer()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def services(tmp_path, fake_renderer, notifier):
    svc = Services(tmp_path, renderer=fake_renderer, notifier=notifier)
    await svc.queue.start()
    yield svc
    await svc.queue.stop()
