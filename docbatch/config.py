"""Application configuration via environment variables."""

import os

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Storage
    data_dir: str = "./var/docbatch"
    jobs_dir: Optional[str] = None  # defaults to <data_dir>/jobs
    batch_store: str = "file"  # "file", "memory" or "supabase"

    # Supabase (only when batch_store=supabase)
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Job queue
    max_concurrent_jobs: int = 3
    max_queue_size: int = 100
    max_retries: int = 3
    queue_tick_seconds: float = 1.0
    shutdown_grace_seconds: float = 10.0

    # Batch execution
    max_rows_in_flight: int = 4
    batch_timeout_seconds: float = 1800.0
    blank_values_missing: bool = False
    seconds_per_document: float = 2.0

    # Upload limits
    max_template_bytes: int = 10 * 1024 * 1024
    max_data_bytes: int = 5 * 1024 * 1024
    max_rows: int = 5000

    # Housekeeping
    job_retention_hours: int = 24
    batch_retention_hours: int = 168
    housekeeping_interval_seconds: int = 3600

    # Service
    log_level: str = "INFO"
    port: int = 8000

    model_config = {
        "env_prefix": "DOCBATCH_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    def resolved_jobs_dir(self) -> str:
        return self.jobs_dir or os.path.join(self.data_dir, "jobs")


settings = Settings()
