"""
Run/job state store backed by SQLAlchemy.

Every public method is one short transaction. Status changes are conditional
updates (``UPDATE ... WHERE status IN (...)``) so that a duplicate or stale
message can never move a job or run twice; such calls return ``None``.
Job creation holds the run row lock (``SELECT ... FOR UPDATE``) so concurrent
handlers of the same run serialize on it.

Methods are synchronous; async callers run them with ``asyncio.to_thread``.
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import create_engine, exists, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.errors import RunNotFoundError
from ..core.pipeline import Stage
from ..core.state_machine import (
    JOB_ACTIVE_STATUSES,
    JOB_STATE_MACHINE,
    RUN_STATE_MACHINE,
    JobStatus,
    RunStatus,
)
from ..observability.logging import get_logger
from .models import Base, Job, JobRecord, Run, RunRecord, utcnow

logger = get_logger(__name__)

_ACTIVE_JOB_VALUES = tuple(s.value for s in JOB_ACTIVE_STATUSES)
_OPEN_RUN_VALUES = (RunStatus.CREATED.value, RunStatus.ACTIVE.value)


def create_db_engine(
    url: str, *, echo: bool = False, pool_size: int = 5, pool_pre_ping: bool = True
) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(url, echo=echo, pool_size=pool_size, pool_pre_ping=pool_pre_ping)


class StateStore:
    """Repository of runs and jobs."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "StateStore":
        return cls(create_db_engine(url, **kwargs))

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("State store schema ready", url=self.engine.url.render_as_string())

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._session_factory.begin() as session:
            yield session

    # Runs

    def create_run(
        self,
        job_configs: dict[str, Any],
        *,
        labels: dict[str, str] | None = None,
        trace_id: str | None = None,
    ) -> Run:
        """Insert a run in status CREATED."""
        with self._transaction() as session:
            record = RunRecord(
                trace_id=trace_id or uuid.uuid4().hex,
                status=RunStatus.CREATED.value,
                job_configs=job_configs,
                labels=labels or {},
                created_at=utcnow(),
            )
            session.add(record)
            session.flush()
            return Run.from_record(record)

    def get_run(self, run_id: int) -> Run | None:
        with self._transaction() as session:
            record = session.get(RunRecord, run_id)
            return Run.from_record(record) if record else None

    def activate_run(self, run_id: int) -> Run:
        """Move a run from CREATED to ACTIVE. Runs in any other status are returned as is."""
        with self._transaction() as session:
            record = self._lock_run(session, run_id)
            if record.status == RunStatus.CREATED.value:
                RUN_STATE_MACHINE.validate(RunStatus.CREATED, RunStatus.ACTIVE)
                record.status = RunStatus.ACTIVE.value
            return Run.from_record(record)

    def list_active_runs(
        self, *, older_than: datetime | None = None, without_active_jobs: bool = False
    ) -> list[Run]:
        """
        ACTIVE runs, optionally only those created before ``older_than``.

        With ``without_active_jobs`` only runs that have no non-terminal job are
        returned: nothing will ever advance them unless scheduling is resumed.
        """
        query = select(RunRecord).where(RunRecord.status == RunStatus.ACTIVE.value)
        if older_than is not None:
            query = query.where(RunRecord.created_at < older_than)
        if without_active_jobs:
            active_job = exists().where(
                JobRecord.run_id == RunRecord.id, JobRecord.status.in_(_ACTIVE_JOB_VALUES)
            )
            query = query.where(~active_job)

        with self._transaction() as session:
            return [Run.from_record(r) for r in session.scalars(query.order_by(RunRecord.id))]

    def list_unstarted_runs(self, *, older_than: datetime | None = None) -> list[Run]:
        """CREATED runs without any job, optionally only those created before ``older_than``."""
        any_job = exists().where(JobRecord.run_id == RunRecord.id)
        query = select(RunRecord).where(RunRecord.status == RunStatus.CREATED.value, ~any_job)
        if older_than is not None:
            query = query.where(RunRecord.created_at < older_than)

        with self._transaction() as session:
            return [Run.from_record(r) for r in session.scalars(query.order_by(RunRecord.id))]

    def finalize_run(self, run_id: int, status: RunStatus, error: str | None = None) -> Run | None:
        """Move an open run to a terminal status. Returns None if it already is terminal."""
        RUN_STATE_MACHINE.validate(RunStatus.ACTIVE, status)
        with self._transaction() as session:
            result = session.execute(
                update(RunRecord)
                .where(RunRecord.id == run_id, RunRecord.status.in_(_OPEN_RUN_VALUES))
                .values(status=status.value, finished_at=utcnow(), error=error)
            )
            if result.rowcount == 0:
                return None
            return Run.from_record(session.get(RunRecord, run_id))

    def cancel_run(self, run_id: int, reason: str = "cancelled") -> tuple[Run, list[Job]] | None:
        """
        Fail an open run and all of its non-terminal jobs in one transaction.

        Returns the run and the jobs that were failed, or None if the run was
        already terminal.
        """
        with self._transaction() as session:
            record = self._lock_run(session, run_id)
            if record.status not in _OPEN_RUN_VALUES:
                return None

            now = utcnow()
            record.status = RunStatus.FAILED.value
            record.finished_at = now
            record.error = reason

            jobs = session.scalars(
                select(JobRecord).where(
                    JobRecord.run_id == run_id, JobRecord.status.in_(_ACTIVE_JOB_VALUES)
                )
            ).all()
            for job in jobs:
                job.status = JobStatus.FAILED.value
                job.finished_at = now
                job.error = reason
            session.flush()
            return Run.from_record(record), [Job.from_record(j) for j in jobs]

    # Jobs

    def create_job(
        self,
        run_id: int,
        stage: Stage,
        configuration: dict[str, Any],
        heartbeat_deadline: datetime,
    ) -> Job | None:
        """
        Create the job of a stage directly in SCHEDULED.

        Returns None when the run is no longer open or the stage already has a
        job; the caller must not publish a request in that case.
        """
        JOB_STATE_MACHINE.validate(JobStatus.CREATED, JobStatus.SCHEDULED)
        try:
            with self._transaction() as session:
                run = self._lock_run(session, run_id)
                if run.status not in _OPEN_RUN_VALUES:
                    return None
                existing = session.scalar(
                    select(JobRecord.id).where(
                        JobRecord.run_id == run_id, JobRecord.stage == Stage(stage).value
                    )
                )
                if existing is not None:
                    return None

                record = JobRecord(
                    run_id=run_id,
                    stage=Stage(stage).value,
                    status=JobStatus.SCHEDULED.value,
                    configuration=configuration,
                    created_at=utcnow(),
                    heartbeat_deadline=heartbeat_deadline,
                    retry_count=0,
                )
                session.add(record)
                session.flush()
                return Job.from_record(record)
        except IntegrityError:
            # Lost the race on uq_jobs_run_stage against a concurrent handler
            logger.debug("Job already exists", run_id=run_id, stage=Stage(stage).value)
            return None

    def get_job(self, run_id: int, stage: Stage) -> Job | None:
        with self._transaction() as session:
            record = session.scalar(
                select(JobRecord).where(
                    JobRecord.run_id == run_id, JobRecord.stage == Stage(stage).value
                )
            )
            return Job.from_record(record) if record else None

    def get_job_by_id(self, job_id: int) -> Job | None:
        with self._transaction() as session:
            record = session.get(JobRecord, job_id)
            return Job.from_record(record) if record else None

    def list_jobs(self, run_id: int) -> list[Job]:
        with self._transaction() as session:
            records = session.scalars(
                select(JobRecord).where(JobRecord.run_id == run_id).order_by(JobRecord.id)
            )
            return [Job.from_record(r) for r in records]

    def complete_job(
        self,
        run_id: int,
        stage: Stage,
        status: JobStatus,
        *,
        result_summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Job | None:
        """
        Record the terminal status of a job.

        Returns None if the job does not exist or is already terminal, i.e. the
        message that triggered this call was a duplicate or arrived late.
        """
        if not status.is_terminal:
            raise ValueError(f"complete_job needs a terminal status, got {status.value}")
        return self._conditional_job_update(
            run_id,
            stage,
            allowed=_ACTIVE_JOB_VALUES,
            values={
                "status": status.value,
                "finished_at": utcnow(),
                "result_summary": result_summary,
                "error": error,
            },
        )

    def retry_job(
        self,
        run_id: int,
        stage: Stage,
        *,
        expected_retry_count: int,
        heartbeat_deadline: datetime,
        error: str | None = None,
    ) -> Job | None:
        """
        Put a job back to SCHEDULED for another attempt.

        The update only applies while ``retry_count`` still equals
        ``expected_retry_count``, so a repeated call cannot spend the retry
        budget twice.
        """
        return self._conditional_job_update(
            run_id,
            stage,
            allowed=(JobStatus.SCHEDULED.value, JobStatus.RUNNING.value),
            extra_where=(JobRecord.retry_count == expected_retry_count,),
            values={
                "status": JobStatus.SCHEDULED.value,
                "retry_count": expected_retry_count + 1,
                "heartbeat_deadline": heartbeat_deadline,
                "started_at": None,
                "error": error,
            },
        )

    def mark_running(self, run_id: int, stage: Stage, heartbeat_deadline: datetime) -> Job | None:
        """Move a SCHEDULED job to RUNNING, or extend the deadline of a RUNNING one."""
        job = self._conditional_job_update(
            run_id,
            stage,
            allowed=(JobStatus.SCHEDULED.value,),
            values={
                "status": JobStatus.RUNNING.value,
                "started_at": utcnow(),
                "heartbeat_deadline": heartbeat_deadline,
            },
        )
        if job is not None:
            return job
        return self._conditional_job_update(
            run_id,
            stage,
            allowed=(JobStatus.RUNNING.value,),
            values={"heartbeat_deadline": heartbeat_deadline},
        )

    def extend_deadline(self, job_id: int, heartbeat_deadline: datetime) -> bool:
        """Push back the heartbeat deadline of a non-terminal job."""
        with self._transaction() as session:
            result = session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.status.in_(_ACTIVE_JOB_VALUES))
                .values(heartbeat_deadline=heartbeat_deadline)
            )
            return result.rowcount > 0

    def list_non_terminal_jobs_older_than(
        self, cutoff: datetime, *, deadline_before: datetime | None = None
    ) -> list[Job]:
        """
        Non-terminal jobs created before ``cutoff``.

        With ``deadline_before`` only jobs whose heartbeat deadline passed that
        point in time are returned.
        """
        query = select(JobRecord).where(
            JobRecord.status.in_(_ACTIVE_JOB_VALUES), JobRecord.created_at < cutoff
        )
        if deadline_before is not None:
            query = query.where(JobRecord.heartbeat_deadline < deadline_before)

        with self._transaction() as session:
            return [Job.from_record(r) for r in session.scalars(query.order_by(JobRecord.id))]

    # Helpers

    def _lock_run(self, session: Session, run_id: int) -> RunRecord:
        record = session.scalar(select(RunRecord).where(RunRecord.id == run_id).with_for_update())
        if record is None:
            raise RunNotFoundError(f"Run {run_id} does not exist")
        return record

    def _conditional_job_update(
        self,
        run_id: int,
        stage: Stage,
        *,
        allowed: tuple[str, ...],
        values: dict[str, Any],
        extra_where: tuple = (),
    ) -> Job | None:
        stage_value = Stage(stage).value
        with self._transaction() as session:
            result = session.execute(
                update(JobRecord)
                .where(
                    JobRecord.run_id == run_id,
                    JobRecord.stage == stage_value,
                    JobRecord.status.in_(allowed),
                    *extra_where,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            record = session.scalar(
                select(JobRecord).where(
                    JobRecord.run_id == run_id, JobRecord.stage == stage_value
                )
            )
            return Job.from_record(record)
