"""
Orchestrator: drives runs through the pipeline by reacting to inbox messages.

For every worker reply the orchestrator
1. records the job outcome with a conditional update (duplicates and late
   replies are discarded as ``StateConflict``),
2. retries the job if the error is retryable and the budget allows it,
3. recomputes which stages became eligible and creates their jobs under the
   run row lock,
4. publishes the stage requests after the transaction committed,
5. finalizes the run once every enabled stage is settled.

Delivery is at least once and messages of one run may be handled
concurrently; correctness relies on the state store's conditional updates,
never on in-process locks.
"""

import asyncio
from collections.abc import Callable, Mapping
from datetime import timedelta
from typing import Any, TypeVar

from ..messaging.endpoints import ORCHESTRATOR_ENDPOINT
from ..messaging.model import (
    CancelRun,
    CreateRun,
    LostJob,
    LostSchedule,
    Message,
    PayloadBase,
    StageRequest,
    StageResult,
    WorkerError,
    WorkerProgress,
)
from ..messaging.spi import HandlerResult, MessageSender
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from ..storage.models import Job, Run, utcnow
from ..storage.repository import StateStore
from .errors import RunNotFoundError, StateConflict, TransportError
from .pipeline import ANCESTORS, RunInfo, Stage
from .state_machine import JobStatus, RunStatus

logger = get_logger(__name__)

T = TypeVar("T")

LOST_JOB_REASON = "job lost"


class Orchestrator:
    """Run state machine on top of the state store and the stage senders."""

    def __init__(
        self,
        store: StateStore,
        senders: Mapping[Stage, MessageSender],
        *,
        max_retries: int,
        heartbeat_timeout: float,
    ):
        self.store = store
        self.senders = dict(senders)
        self.max_retries = max_retries
        self.heartbeat_timeout = heartbeat_timeout
        self.metrics = get_metrics_collector()

        self._handlers: dict[type[PayloadBase], Callable[[Message], Any]] = {
            CreateRun: self._on_create_run,
            StageResult: self._on_stage_result,
            WorkerError: self._on_worker_error,
            WorkerProgress: self._on_worker_progress,
            LostJob: self._on_lost_job,
            LostSchedule: self._on_lost_schedule,
            CancelRun: self._on_cancel_run,
        }
        missing = [t.__name__ for t in ORCHESTRATOR_ENDPOINT.accepts if t not in self._handlers]
        if missing:
            raise TypeError(f"Orchestrator has no handler for: {', '.join(missing)}")

    async def _db(self, fn: Callable[..., T], *args, **kwargs) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _deadline(self):
        return utcnow() + timedelta(seconds=self.heartbeat_timeout)

    # Inbox

    async def handle_message(self, message: Message) -> HandlerResult:
        """Receive loop handler for the orchestrator inbox."""
        payload_type = message.payload_type
        handler = self._handlers[type(message.payload)]

        with probe("orchestrator.handle_message", type=payload_type, run_id=message.run_id):
            try:
                await handler(message)
            except StateConflict as e:
                self.metrics.increment("duplicates_discarded_total", type=payload_type)
                logger.info(f"Discarding {payload_type}: {e}", stage=e.stage)
            except RunNotFoundError as e:
                self.metrics.increment("duplicates_discarded_total", type=payload_type)
                logger.error(f"Discarding {payload_type}: {e}")

        self.metrics.increment("messages_handled_total", type=payload_type)
        return HandlerResult.CONTINUE

    async def _on_create_run(self, message: Message) -> None:
        run_id = message.payload.run_id
        run = await self._db(self.store.activate_run, run_id)
        if run.status.is_terminal:
            raise StateConflict(f"Run {run_id} is already {run.status.value}", run_id=run_id)
        logger.info("Run started", run_id=run_id, stages=sorted(run.job_configs))
        await self.resume_run(run_id)

    async def _on_stage_result(self, message: Message) -> None:
        await self.handle_result(message.run_id, message.payload)

    async def _on_worker_error(self, message: Message) -> None:
        await self.handle_worker_error(message.run_id, message.payload)

    async def _on_worker_progress(self, message: Message) -> None:
        payload: WorkerProgress = message.payload
        job = await self._db(
            self.store.mark_running, message.run_id, payload.stage, self._deadline()
        )
        if job is None:
            raise StateConflict(
                "Progress for a job that is not active",
                run_id=message.run_id,
                stage=payload.stage.value,
            )
        logger.debug("Job running", stage=payload.stage.value, job_id=job.id)

    async def _on_lost_job(self, message: Message) -> None:
        stage = message.payload.stage
        await self.handle_worker_error(
            message.run_id, WorkerError(stage=stage, reason=LOST_JOB_REASON, retryable=True)
        )

    async def _on_lost_schedule(self, message: Message) -> None:
        await self.resume_run(message.run_id)

    async def _on_cancel_run(self, message: Message) -> None:
        await self.cancel_run(message.run_id, message.payload.reason)

    # Operations

    async def handle_result(self, run_id: int, result: StageResult) -> Job:
        """Record a stage result and advance the run."""
        status = JobStatus.FINISHED_WITH_ISSUES if result.issues > 0 else JobStatus.FINISHED
        job = await self._db(
            self.store.complete_job,
            run_id,
            result.stage,
            status,
            result_summary={**result.summary, "issues": result.issues},
        )
        if job is None:
            raise StateConflict(
                "Result for a job that is already terminal or unknown",
                run_id=run_id,
                stage=result.stage.value,
            )

        self.metrics.increment("jobs_completed_total", stage=job.stage.value, status=status.value)
        logger.info(
            "Job completed", stage=job.stage.value, status=status.value, issues=result.issues
        )
        await self.resume_run(run_id)
        return job

    async def handle_worker_error(self, run_id: int, error: WorkerError) -> Job:
        """
        Record a worker failure.

        A retryable error republishes the request while the job's retry budget
        lasts; otherwise the job fails. Returns the retried or failed job.

        Raises:
            StateConflict: if the job is unknown or already terminal
        """
        stage = Stage(error.stage)
        job = await self._db(self.store.get_job, run_id, stage)
        if job is None or job.is_terminal:
            raise StateConflict(
                "Error for a job that is already terminal or unknown",
                run_id=run_id,
                stage=stage.value,
            )

        if error.retryable and job.retry_count < self.max_retries:
            retried = await self._db(
                self.store.retry_job,
                run_id,
                stage,
                expected_retry_count=job.retry_count,
                heartbeat_deadline=self._deadline(),
                error=error.reason,
            )
            if retried is None:
                raise StateConflict("Job changed concurrently", run_id=run_id, stage=stage.value)

            self.metrics.increment("job_retries_total", stage=stage.value)
            logger.warning(
                f"Retrying {stage.value} after error: {error.reason}",
                attempt=retried.retry_count + 1,
                max_retries=self.max_retries,
            )
            run = await self._require_run(run_id)
            jobs = await self._db(self.store.list_jobs, run_id)
            if not await self._publish(run, retried, jobs):
                await self.resume_run(run_id)
            return retried

        reason = error.reason
        if error.retryable:
            reason = f"{error.reason} (retries exhausted after {job.retry_count} attempts)"
        failed = await self._db(
            self.store.complete_job, run_id, stage, JobStatus.FAILED, error=reason
        )
        if failed is None:
            raise StateConflict("Job changed concurrently", run_id=run_id, stage=stage.value)

        self.metrics.increment("jobs_completed_total", stage=stage.value, status="FAILED")
        logger.warning(f"Job failed: {reason}", stage=stage.value)
        await self.resume_run(run_id)
        return failed

    async def resume_run(self, run_id: int) -> Run:
        """
        Schedule every eligible stage of a run and finalize it once it is complete.

        Safe to call at any time and any number of times; it is also how lost
        schedules are recovered.
        """
        while True:
            run = await self._require_run(run_id)
            if run.status.is_terminal:
                return run

            jobs = await self._db(self.store.list_jobs, run_id)
            info = RunInfo.build(run.id, run.job_configs, ((j.stage, j.status) for j in jobs))

            if info.is_complete():
                return await self._finalize(run, info)

            next_stages = info.next_stages()
            skipped = info.skipped_stages()
            if skipped:
                logger.debug("Stages skipped", stages=[s.value for s in skipped])
            if not next_stages:
                return run

            failed_immediately = False
            for stage in next_stages:
                if not await self._schedule(run, stage, jobs):
                    failed_immediately = True
            if not failed_immediately:
                return run

    async def cancel_run(self, run_id: int, reason: str = "cancelled") -> bool:
        """
        Fail a run and all of its unfinished jobs.

        Returns False if the run was already terminal.
        """
        result = await self._db(self.store.cancel_run, run_id, reason)
        if result is None:
            logger.info("Run already terminal, nothing to cancel", run_id=run_id)
            return False

        _, jobs = result
        self.metrics.increment("runs_finalized_total", status=RunStatus.FAILED.value)
        logger.warning(
            f"Run cancelled: {reason}", run_id=run_id, jobs=[j.stage.value for j in jobs]
        )

        for stage, sender in self.senders.items():
            try:
                await sender.cancel(run_id)
            except Exception as e:
                logger.warning(f"Best-effort cancellation failed: {e}", stage=stage.value)
        return True

    # Internals

    async def _require_run(self, run_id: int) -> Run:
        run = await self._db(self.store.get_run, run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} does not exist")
        return run

    async def _schedule(self, run: Run, stage: Stage, jobs: list[Job]) -> bool:
        """Create the job of ``stage`` and publish its request. False if it failed on the spot."""
        job = await self._db(
            self.store.create_job, run.id, stage, run.job_configs[stage.value], self._deadline()
        )
        if job is None:
            logger.debug("Stage already scheduled", stage=stage.value)
            return True
        return await self._publish(run, job, jobs)

    async def _publish(self, run: Run, job: Job, jobs: list[Job]) -> bool:
        sender = self.senders.get(job.stage)
        if sender is None:
            reason = f"No sender configured for stage {job.stage.value}"
            logger.error(reason, stage=job.stage.value)
            await self._db(
                self.store.complete_job, run.id, job.stage, JobStatus.FAILED, error=reason
            )
            return False

        upstream = {
            j.stage.value: j.result_summary or {}
            for j in jobs
            if j.is_terminal and j.stage in ANCESTORS[job.stage]
        }
        request = StageRequest(
            stage=job.stage,
            job_id=job.id,
            configuration=job.configuration,
            upstream=upstream,
            attempt=job.retry_count + 1,
        )

        try:
            await sender.send(Message.create(run.trace_id, run.id, request))
        except TransportError as e:
            # Unknown outcome; the job monitor retries once the deadline passed
            logger.error(
                f"Publishing request failed: {e}", stage=job.stage.value, job_id=job.id
            )
            return True

        self.metrics.increment("jobs_scheduled_total", stage=job.stage.value)
        logger.info(
            "Stage scheduled", stage=job.stage.value, job_id=job.id, attempt=request.attempt
        )
        return True

    async def _finalize(self, run: Run, info: RunInfo) -> Run:
        status = info.final_status()
        failed = sorted(s.value for s, st in info.jobs.items() if st is JobStatus.FAILED)
        error = f"Failed stages: {', '.join(failed)}" if failed else None

        finalized = await self._db(self.store.finalize_run, run.id, status, error)
        if finalized is None:
            # Another handler finalized the run first
            return await self._require_run(run.id)

        self.metrics.increment("runs_finalized_total", status=status.value)
        logger.info("Run finalized", run_id=run.id, status=status.value)
        return finalized
