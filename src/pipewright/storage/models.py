"""
Database models of the run/job state store and the records handed to callers.

Timestamps are stored as naive UTC so that SQLite (tests) and PostgreSQL
(production) compare them the same way.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from ..core.pipeline import Stage
from ..core.state_machine import JobStatus, RunStatus

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


class RunRecord(Base):  # type: ignore[valid-type, misc]
    """One pipeline run."""

    __tablename__ = "runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trace_id = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default=RunStatus.CREATED.value, index=True)
    # Stage name -> configuration document; absent stages are not part of the run
    job_configs = Column(JSON, nullable=False, default=dict)
    labels = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)


class JobRecord(Base):  # type: ignore[valid-type, misc]
    """The job executing one stage of a run."""

    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint("run_id", "stage", name="uq_jobs_run_stage"),
        Index("ix_jobs_status_deadline", "status", "heartbeat_deadline"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("runs.id"), nullable=False, index=True)
    stage = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False, default=JobStatus.CREATED.value)
    configuration = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    heartbeat_deadline = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    result_summary = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)


@dataclass(frozen=True)
class Run:
    id: int
    trace_id: str
    status: RunStatus
    job_configs: dict[str, Any]
    labels: dict[str, str]
    created_at: datetime
    finished_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_record(cls, record: RunRecord) -> "Run":
        return cls(
            id=record.id,
            trace_id=record.trace_id,
            status=RunStatus(record.status),
            job_configs=dict(record.job_configs or {}),
            labels=dict(record.labels or {}),
            created_at=record.created_at,
            finished_at=record.finished_at,
            error=record.error,
        )


@dataclass(frozen=True)
class Job:
    id: int
    run_id: int
    stage: Stage
    status: JobStatus
    configuration: dict[str, Any]
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    heartbeat_deadline: datetime | None = None
    retry_count: int = 0
    result_summary: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_record(cls, record: JobRecord) -> "Job":
        return cls(
            id=record.id,
            run_id=record.run_id,
            stage=Stage(record.stage),
            status=JobStatus(record.status),
            configuration=dict(record.configuration or {}),
            created_at=record.created_at,
            started_at=record.started_at,
            finished_at=record.finished_at,
            heartbeat_deadline=record.heartbeat_deadline,
            retry_count=record.retry_count,
            result_summary=record.result_summary,
            error=record.error,
        )
