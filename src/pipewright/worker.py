"""
Worker side of the orchestration contract.

A worker subscribes to the request endpoint of exactly one stage, runs an
opaque callable for every ``StageRequest`` and publishes exactly one terminal
reply (``StageResult`` or ``WorkerError``) to the orchestrator inbox. Before
starting the work it sends a ``WorkerProgress`` so the orchestrator moves the
job to RUNNING, and repeats it every ``heartbeat_interval`` while the work
runs so the job monitor sees a live heartbeat.

    >>> async def analyze(request: StageRequest) -> StageOutcome:
    ...     return StageOutcome(issues=0, summary={"packages": 42})
    >>> await run_worker(Stage.ANALYZER, analyze, settings, stop)
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .config.settings import Settings
from .core.errors import PipewrightError, TransportError
from .core.pipeline import Stage
from .messaging.endpoints import ORCHESTRATOR_ENDPOINT, endpoint_for_stage
from .messaging.model import Message, StageRequest, StageResult, WorkerError, WorkerProgress
from .messaging.spi import HandlerResult, MessageSender, create_receiver, create_sender
from .observability.logging import get_logger
from .observability.probe import probe

logger = get_logger(__name__)


@dataclass
class StageOutcome:
    """What a stage callable returns on success."""

    issues: int = 0
    summary: dict[str, Any] = field(default_factory=dict)


class StageFailure(PipewrightError):
    """Raised by a stage callable to report a failure with an explicit reason."""

    def __init__(self, reason: str, *, retryable: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.retryable = retryable


StageWork = Callable[[StageRequest], Awaitable[StageOutcome]]


class Worker:
    """Handles the requests of one stage."""

    def __init__(
        self,
        stage: Stage,
        work: StageWork,
        reply_sender: MessageSender,
        *,
        send_progress: bool = True,
        heartbeat_interval: float | None = None,
    ):
        self.stage = Stage(stage)
        self.work = work
        self.reply_sender = reply_sender
        self.send_progress = send_progress
        # Without an interval only the initial progress report is sent
        self.heartbeat_interval = heartbeat_interval

    async def handle_message(self, message: Message) -> HandlerResult:
        request: StageRequest = message.payload
        if request.stage is not self.stage:
            logger.error(
                "Ignoring request for another stage",
                expected=self.stage.value,
                received=request.stage.value,
            )
            return HandlerResult.CONTINUE

        heartbeat = None
        if self.send_progress:
            await self._report_progress(message, request)
            if self.heartbeat_interval:
                heartbeat = asyncio.create_task(
                    self._heartbeat(message, request), name=f"{self.stage.value}-heartbeat"
                )

        try:
            with probe("worker.execute", stage=self.stage.value, attempt=request.attempt):
                reply = await self._execute(request)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat

        # A failed reply propagates so the request is redelivered
        await self.reply_sender.send(Message.create(message.trace_id, message.run_id, reply))
        logger.info("Replied", stage=self.stage.value, job_id=request.job_id, type=reply.type)
        return HandlerResult.CONTINUE

    async def _report_progress(self, message: Message, request: StageRequest) -> None:
        progress = WorkerProgress(stage=self.stage, job_id=request.job_id)
        try:
            await self.reply_sender.send(Message.create(message.trace_id, message.run_id, progress))
        except TransportError as e:
            logger.warning(f"Could not report progress: {e}", job_id=request.job_id)

    async def _heartbeat(self, message: Message, request: StageRequest) -> None:
        """Keep the job's heartbeat deadline moving while the stage runs."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self._report_progress(message, request)

    async def _execute(self, request: StageRequest) -> StageResult | WorkerError:
        try:
            outcome = await self.work(request)
        except StageFailure as e:
            logger.warning(f"Stage failed: {e.reason}", retryable=e.retryable)
            return WorkerError(
                stage=self.stage, job_id=request.job_id, reason=e.reason, retryable=e.retryable
            )
        except Exception as e:
            logger.exception("Stage raised an unexpected error")
            return WorkerError(
                stage=self.stage,
                job_id=request.job_id,
                reason=f"{type(e).__name__}: {e}",
                retryable=False,
            )

        return StageResult(
            stage=self.stage,
            job_id=request.job_id,
            issues=outcome.issues,
            summary=outcome.summary,
        )


async def run_worker(
    stage: Stage, work: StageWork, settings: Settings, stop: asyncio.Event
) -> None:
    """Run a worker for ``stage`` until ``stop`` is set."""
    reply_sender = create_sender(ORCHESTRATOR_ENDPOINT, settings)
    worker = Worker(
        stage, work, reply_sender, heartbeat_interval=settings.worker_heartbeat_interval()
    )
    receiver = create_receiver(endpoint_for_stage(stage), settings, worker.handle_message)

    receive_task = asyncio.create_task(receiver.run(), name=f"{Stage(stage).value}-receiver")
    stop_task = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({receive_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        receiver.stop()
        await receive_task
    finally:
        stop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_task
        await reply_sender.close()
