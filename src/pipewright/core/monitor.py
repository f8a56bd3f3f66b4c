"""
Job monitor: reconciles jobs and runs that no message will ever resolve.

Every ``sweep_interval`` the monitor looks at non-terminal jobs whose heartbeat
deadline passed and that are older than ``lost_jobs_min_age``:

- worker alive and within the stage's ``max_runtime``: the deadline is extended
- worker alive beyond ``max_runtime``: the job is stuck and fails ("timeout")
- worker gone, or unknown for a job no worker has picked up yet: the job is
  retried ("worker lost") while its retry budget lasts, and fails afterwards
- worker unknown for a RUNNING job: nothing happens until the stage's
  ``max_runtime`` has passed, then it is treated as lost

Workers report progress periodically, which keeps the deadline of a RUNNING
job moving; an overdue RUNNING job has stopped reporting.

All outcomes go through ``Orchestrator.handle_worker_error``, so a genuine
result racing the monitor is resolved by the state store's conditional update.
Afterwards runs still CREATED without any job are started (their ``CreateRun``
never arrived) and active runs without any active job are resumed (lost
schedules). A failing step is logged and the sweep continues with the next one.
"""

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ..config.settings import MonitorConfig
from ..messaging.model import WorkerError
from ..observability.logging import (
    clear_message_context,
    get_logger,
    run_with_status_logging,
    set_message_context,
)
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from ..storage.models import Job, utcnow
from ..storage.repository import StateStore
from .errors import MonitorEscalation, RunNotFoundError, StateConflict
from .orchestrator import Orchestrator
from .state_machine import JobStatus

logger = get_logger(__name__)

MONITOR_JOB_NAME = "job-monitor"
TIMEOUT_REASON = "timeout"
WORKER_LOST_REASON = "worker lost"


class Liveness(str, Enum):
    ALIVE = "alive"
    GONE = "gone"
    UNKNOWN = "unknown"


class LivenessProbe(ABC):
    """
    Asks the execution backend whether the worker of a job still runs.

    Implementations for orchestrated compute (e.g. a container job scheduler)
    look the job up by run ID and stage.
    """

    @abstractmethod
    async def check(self, job: Job) -> Liveness:
        """Liveness of the worker executing ``job``."""


class NullLivenessProbe(LivenessProbe):
    """For queue-based deployments: there is no backend to ask."""

    async def check(self, job: Job) -> Liveness:
        return Liveness.UNKNOWN


@dataclass
class SweepResult:
    checked: int = 0
    extended: int = 0
    retried: int = 0
    failed: int = 0
    conflicts: int = 0
    waiting: int = 0
    errors: int = 0
    started_runs: int = 0
    resumed_runs: int = 0

    def as_properties(self) -> dict[str, Any]:
        return {
            "processedCount": self.checked,
            "extendedCount": self.extended,
            "retriedCount": self.retried,
            "failedCount": self.failed,
            "conflictCount": self.conflicts,
            "waitingCount": self.waiting,
            "errorCount": self.errors,
            "startedRunCount": self.started_runs,
            "resumedRunCount": self.resumed_runs,
        }


class JobMonitor:
    """Periodic sweep over overdue jobs and lost schedules."""

    def __init__(
        self,
        store: StateStore,
        orchestrator: Orchestrator,
        config: MonitorConfig,
        liveness: LivenessProbe | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.config = config
        self.liveness = liveness or NullLivenessProbe()
        self.clock = clock
        self.metrics = get_metrics_collector()

    async def sweep(self) -> SweepResult:
        """Run one sweep and return what it did."""
        result = SweepResult()
        now = self.clock()
        cutoff = now - timedelta(seconds=self.config.lost_jobs_min_age)

        with probe("monitor.sweep"):
            overdue = await asyncio.to_thread(
                self.store.list_non_terminal_jobs_older_than, cutoff, deadline_before=now
            )
            for job in overdue:
                result.checked += 1
                await self._guarded(result, job.run_id, self._reconcile(job, now, result))

            unstarted = await asyncio.to_thread(self.store.list_unstarted_runs, older_than=cutoff)
            for run in unstarted:
                await self._guarded(result, run.id, self._start_run(run.id, result))

            lost = await asyncio.to_thread(
                self.store.list_active_runs, older_than=cutoff, without_active_jobs=True
            )
            for run in lost:
                await self._guarded(result, run.id, self._resume_run(run.id, result))

        return result

    async def _guarded(self, result: SweepResult, run_id: int, step: Awaitable[None]) -> None:
        """Run one reconciliation step; a failure is logged and the sweep goes on."""
        set_message_context(None, run_id)
        try:
            await step
        except Exception:
            result.errors += 1
            logger.exception("Reconciliation step failed")
        finally:
            clear_message_context()

    async def _start_run(self, run_id: int, result: SweepResult) -> None:
        logger.warning("Starting run whose CreateRun never arrived", run_id=run_id)
        run = await asyncio.to_thread(self.store.activate_run, run_id)
        if run.status.is_terminal:
            return
        await self.orchestrator.resume_run(run_id)
        result.started_runs += 1

    async def _resume_run(self, run_id: int, result: SweepResult) -> None:
        logger.warning("Resuming lost schedule", run_id=run_id)
        await self.orchestrator.resume_run(run_id)
        result.resumed_runs += 1

    async def _reconcile(self, job: Job, now: datetime, result: SweepResult) -> None:
        liveness = await self._check_liveness(job)
        runtime = (now - (job.started_at or job.created_at)).total_seconds()
        within_max_runtime = runtime < self.config.max_runtime[job.stage]

        if liveness is Liveness.ALIVE:
            if within_max_runtime:
                deadline = now + timedelta(seconds=self.config.heartbeat_timeout)
                if await asyncio.to_thread(self.store.extend_deadline, job.id, deadline):
                    result.extended += 1
                    logger.debug("Extended deadline", stage=job.stage.value, job_id=job.id)
                return
            error = WorkerError(
                stage=job.stage, job_id=job.id, reason=TIMEOUT_REASON, retryable=False
            )
        elif (
            liveness is Liveness.UNKNOWN
            and job.status is JobStatus.RUNNING
            and within_max_runtime
        ):
            # A worker picked the job up; without a liveness signal it gets until max_runtime
            result.waiting += 1
            logger.info(
                "Heartbeat overdue, waiting for max runtime",
                stage=job.stage.value,
                job_id=job.id,
                runtime_s=round(runtime),
            )
            return
        else:
            error = WorkerError(
                stage=job.stage, job_id=job.id, reason=WORKER_LOST_REASON, retryable=True
            )

        try:
            outcome = await self.orchestrator.handle_worker_error(job.run_id, error)
        except (StateConflict, RunNotFoundError) as e:
            # A genuine result arrived in the meantime
            result.conflicts += 1
            logger.info(f"Job resolved concurrently: {e}", stage=job.stage.value)
            return

        if outcome.status is JobStatus.FAILED:
            result.failed += 1
            escalation = MonitorEscalation(
                f"Job {job.id} of stage {job.stage.value} forced to FAILED",
                run_id=job.run_id,
                stage=job.stage.value,
                reason=outcome.error or error.reason,
            )
            self.metrics.increment(
                "monitor_escalations_total", stage=job.stage.value, reason=error.reason
            )
            logger.error(str(escalation), reason=escalation.reason, liveness=liveness.value)
        else:
            result.retried += 1

    async def _check_liveness(self, job: Job) -> Liveness:
        try:
            return await self.liveness.check(job)
        except Exception as e:
            logger.warning(f"Liveness check failed: {e}", stage=job.stage.value, job_id=job.id)
            return Liveness.UNKNOWN

    async def run_once(self) -> bool:
        """Sweep once, emitting a job status line. Returns whether the sweep succeeded."""

        async def block(properties: dict[str, Any]) -> None:
            result = await self.sweep()
            properties.update(result.as_properties())

        return await run_with_status_logging(MONITOR_JOB_NAME, block)

    async def run(self, stop: asyncio.Event) -> None:
        """Sweep every ``sweep_interval`` seconds until ``stop`` is set."""
        logger.info("Job monitor started", sweep_interval=self.config.sweep_interval)
        while not stop.is_set():
            await self.run_once()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.config.sweep_interval)
        logger.info("Job monitor stopped")
