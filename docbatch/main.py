"""docbatch - bulk document generation service (FastAPI application)."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docbatch.config import settings
from docbatch.logging_config import configure_logging
from docbatch.api.v1.router import v1_router
from docbatch.api.v1.health import router as health_root_router
from docbatch.api.v1 import batches as batches_api
from docbatch.api.v1 import health as health_api
from docbatch.api.v1 import jobs as jobs_api
from docbatch.batches.orchestrator import BatchOrchestrator
from docbatch.batches.progress import ProgressTracker
from docbatch.batches.repository import create_repository
from docbatch.housekeeping import housekeeping_loop
from docbatch.jobs.in_process_queue import InProcessQueue
from docbatch.jobs.persistence import JobStore
from docbatch.notifications.notifier import LoggingNotifier
from docbatch.rendering.template_renderer import TemplateRenderer
from docbatch.storage.temp_results import TempResultStore

logger = logging.getLogger(__name__)


def build_services(config=None):
    """Create the orchestrator and its queue, wired to each other."""
    config = config or settings
    store = TempResultStore(
        base_dir=os.path.join(config.data_dir, "batches"),
        ttl_hours=config.batch_retention_hours,
    )
    orchestrator = BatchOrchestrator(
        repository=create_repository(config),
        store=store,
        renderer=TemplateRenderer(),
        notifier=LoggingNotifier(),
        tracker=ProgressTracker(),
        config=config,
    )
    queue = InProcessQueue(
        worker_fn=orchestrator.execute,
        store=JobStore(config.resolved_jobs_dir()),
        max_concurrent_jobs=config.max_concurrent_jobs,
        max_queue_size=config.max_queue_size,
        max_retries=config.max_retries,
        tick_seconds=config.queue_tick_seconds,
        shutdown_grace_seconds=config.shutdown_grace_seconds,
        on_failed=orchestrator.handle_job_failure,
    )
    orchestrator.attach_queue(queue)
    return orchestrator, queue, store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    configure_logging(settings.log_level)
    logger.info("Starting docbatch on port %d", settings.port)
    logger.info("Data dir: %s (batch store: %s)", settings.data_dir, settings.batch_store)

    orchestrator, queue, store = build_services(settings)
    await queue.start()
    recovered = await orchestrator.recover()
    logger.info(
        "Job queue started (max_concurrent_jobs=%d, recovered batches=%d)",
        settings.max_concurrent_jobs, recovered,
    )

    # Wire services into API endpoints
    batches_api.set_orchestrator(orchestrator)
    jobs_api.set_dispatcher(queue)
    jobs_api.set_orchestrator(orchestrator)
    health_api.set_dispatcher(queue)

    housekeeping = asyncio.create_task(
        housekeeping_loop(
            queue,
            store,
            orchestrator.tracker,
            settings.job_retention_hours,
            settings.housekeeping_interval_seconds,
        )
    )

    yield

    # Shutdown
    logger.info("Shutting down docbatch")
    housekeeping.cancel()
    try:
        await housekeeping
    except asyncio.CancelledError:
        pass
    await queue.stop()
    store.cleanup_expired()


app = FastAPI(
    title="docbatch",
    description="Bulk document generation from a template and a tabular data set",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow frontend dev servers
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
