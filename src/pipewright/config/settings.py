"""
Configuration with Pydantic Settings.

All values come from environment variables with the ``PIPEWRIGHT_`` prefix and
``__`` as the nesting delimiter, or from a JSON file passed on the command
line. Retry budgets, backoff bounds, sweep interval, heartbeat timeout and the
per-stage runtime limits have no defaults and must be configured explicitly.

Example:
    PIPEWRIGHT_ORCHESTRATOR__MAX_RETRIES=2
    PIPEWRIGHT_MONITOR__MAX_RUNTIME__ANALYZER=3600
    PIPEWRIGHT_ENDPOINTS__ORCHESTRATOR__RECEIVER__TYPE=sqs
    PIPEWRIGHT_BROKERS__SQS__REGION_NAME=eu-central-1
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.pipeline import Stage
from ..core.runtime_patterns import RetryPolicy


class DatabaseConfig(BaseModel):
    """Connection to the run/job state store."""

    url: str = Field("sqlite:///./pipewright.db", description="SQLAlchemy database URL")
    echo: bool = Field(False)
    pool_size: int = Field(5, gt=0)
    pool_pre_ping: bool = Field(True)


class OrchestratorConfig(BaseModel):
    """Configuration for orchestrator behavior."""

    max_retries: int = Field(..., ge=0, description="Retry budget per job for retryable errors")


class MonitorConfig(BaseModel):
    """Configuration for the job monitor sweep."""

    sweep_interval: float = Field(..., gt=0, description="Seconds between two sweeps")
    lost_jobs_min_age: float = Field(
        ..., ge=0, description="Jobs and runs younger than this (seconds) are never swept"
    )
    heartbeat_timeout: float = Field(
        ..., gt=0, description="Seconds a job may go without a sign of life"
    )
    max_runtime: dict[Stage, float] = Field(..., description="Maximum runtime per stage (seconds)")

    @field_validator("max_runtime")
    @classmethod
    def validate_max_runtime(cls, v: dict[Stage, float]) -> dict[Stage, float]:
        missing = [s.value for s in Stage if s not in v]
        if missing:
            raise ValueError(f"max_runtime is missing stages: {', '.join(missing)}")
        if any(limit <= 0 for limit in v.values()):
            raise ValueError("max_runtime values must be positive")
        return v


class TransportRetryConfig(BaseModel):
    """Bounds for transparent retries of broker operations."""

    attempts: int = Field(..., ge=1)
    base_backoff: float = Field(..., gt=0)
    max_backoff: float = Field(..., gt=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "TransportRetryConfig":
        if self.max_backoff < self.base_backoff:
            raise ValueError("max_backoff must not be smaller than base_backoff")
        return self

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.attempts, base=self.base_backoff, max_backoff=self.max_backoff
        )


class TransportConfig(BaseModel):
    """One side (sender or receiver) of an endpoint."""

    type: str = Field(..., description="Transport name, e.g. 'sqs', 'redis' or 'memory'")
    queue_name: str = Field(..., min_length=1)
    concurrency: int = Field(1, ge=1, description="Maximum concurrent handler invocations")
    options: dict[str, Any] = Field(default_factory=dict)


class WorkerConfig(BaseModel):
    """Configuration of worker processes."""

    heartbeat_interval: float | None = Field(
        None,
        gt=0,
        description="Seconds between two progress reports of a running stage; "
        "defaults to a third of the monitor heartbeat timeout",
    )


class EndpointConfig(BaseModel):
    sender: TransportConfig | None = None
    receiver: TransportConfig | None = None


class ObservabilityConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field("INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="PIPEWRIGHT_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    orchestrator: OrchestratorConfig
    monitor: MonitorConfig
    transport_retry: TransportRetryConfig
    # Broker connection sections keyed by transport name; validated by each transport
    brokers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    # Endpoint sections keyed by endpoint configuration prefix
    endpoints: dict[str, EndpointConfig] = Field(default_factory=dict)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def validate_heartbeat_interval(self) -> "Settings":
        interval = self.worker.heartbeat_interval
        if interval is not None and interval >= self.monitor.heartbeat_timeout:
            raise ValueError(
                "worker.heartbeat_interval must be shorter than monitor.heartbeat_timeout"
            )
        return self

    def worker_heartbeat_interval(self) -> float:
        """Progress report interval of a running stage."""
        if self.worker.heartbeat_interval is not None:
            return self.worker.heartbeat_interval
        return self.monitor.heartbeat_timeout / 3


def load_settings(path: str | Path | None = None) -> Settings:
    """
    Load settings from environment variables, optionally seeded from a JSON file.

    Values from the file take precedence over environment variables.
    """
    if path is None:
        return Settings()
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return Settings(**data)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
