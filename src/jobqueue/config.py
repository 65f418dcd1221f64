"""
Engine configuration.

Every setting has a default; from_env() overrides them from JOBQUEUE_*
environment variables (a .env file is loaded first if present).
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from .entities import DEFAULT_MAX_RETRIES


ENV_PREFIX = "JOBQUEUE_"


class EngineConfig(BaseModel):
    """Loop intervals, pool sizing, retry policy and storage settings."""

    # Loop intervals (seconds)
    dispatcher_poll_interval: float = Field(default=2.0, gt=0, description="Worker poll interval")
    scheduler_poll_interval: float = Field(default=10.0, gt=0, description="Scheduled-job check interval")
    retry_check_interval: float = Field(default=30.0, gt=0, description="Retry check interval")
    metrics_broadcast_interval: float = Field(default=5.0, gt=0, description="Metrics broadcast interval")
    broadcast_queue_size: int = Field(
        default=1000, ge=1, description="Status/metrics messages buffered for the broadcaster"
    )

    # Dispatch
    worker_pool_size: int = Field(default=4, ge=1, description="Concurrent job executions")
    dispatch_batch_size: Optional[int] = Field(
        default=None, ge=1, description="Candidates per poll (default: 2 * pool size)"
    )

    # Retry policy
    retry_initial_delay: float = Field(default=1.0, gt=0, description="First backoff delay (s)")
    retry_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor")
    retry_max_delay: float = Field(default=60.0, gt=0, description="Backoff cap (s)")
    default_max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)

    # Storage and outputs
    db_path: str = Field(default="data/jobqueue.db", description="SQLite database file")
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")
    webhook_url: Optional[str] = Field(
        default=None, description="Base URL for topic publishes and broadcasts"
    )

    @model_validator(mode="after")
    def _check_delays(self) -> "EngineConfig":
        if self.retry_max_delay < self.retry_initial_delay:
            raise ValueError(
                f"retry_max_delay ({self.retry_max_delay}) must be >= "
                f"retry_initial_delay ({self.retry_initial_delay})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        """
        Build a config from JOBQUEUE_* environment variables.

        JOBQUEUE_WORKER_POOL_SIZE=8 sets worker_pool_size, and so on.
        Keyword overrides win over the environment.
        """
        load_dotenv()

        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
