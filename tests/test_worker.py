"""
Tests for the worker side: request handling and a full run over the
in-memory transport.
"""

import asyncio

import pytest
from conftest import RecordingSender, settings_data

from pipewright.config.container import setup_container
from pipewright.config.settings import Settings
from pipewright.core.errors import TransportError
from pipewright.core.pipeline import Stage
from pipewright.core.state_machine import JobStatus, RunStatus
from pipewright.messaging.endpoints import ORCHESTRATOR_ENDPOINT
from pipewright.messaging.model import (
    CreateRun,
    Message,
    StageRequest,
    StageResult,
    WorkerError,
    WorkerProgress,
)
from pipewright.messaging.spi import HandlerResult, create_sender
from pipewright.storage.repository import StateStore
from pipewright.worker import StageFailure, StageOutcome, Worker, run_worker


def request_message(stage=Stage.ANALYZER, attempt=1) -> Message:
    request = StageRequest(stage=stage, job_id=11, configuration={"k": "v"}, attempt=attempt)
    return Message.create("trace-w", 3, request)


class ProgressFailingSender(RecordingSender):
    async def _send(self, body, message):
        if isinstance(message.payload, WorkerProgress):
            raise ConnectionError("inbox unreachable")
        await super()._send(body, message)


class TestWorker:
    """Test handling of a single stage request."""

    @pytest.mark.asyncio
    async def test_success_sends_progress_then_result(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT)
        seen = []

        async def analyze(request):
            seen.append(request.configuration)
            return StageOutcome(issues=2, summary={"packages": 40})

        worker = Worker(Stage.ANALYZER, analyze, replies)
        assert await worker.handle_message(request_message()) is HandlerResult.CONTINUE

        assert seen == [{"k": "v"}]
        progress, result = replies.payloads
        assert progress == WorkerProgress(stage=Stage.ANALYZER, job_id=11)
        assert result == StageResult(
            stage=Stage.ANALYZER, job_id=11, issues=2, summary={"packages": 40}
        )
        assert all(m.trace_id == "trace-w" and m.run_id == 3 for m in replies.sent)

    @pytest.mark.asyncio
    async def test_progress_can_be_disabled(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT)

        async def analyze(request):
            return StageOutcome()

        await Worker(Stage.ANALYZER, analyze, replies, send_progress=False).handle_message(
            request_message()
        )
        assert [p.type for p in replies.payloads] == ["StageResult"]

    @pytest.mark.asyncio
    async def test_long_stage_keeps_reporting_progress(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT)

        async def analyze(request):
            await asyncio.sleep(0.15)
            return StageOutcome()

        worker = Worker(Stage.ANALYZER, analyze, replies, heartbeat_interval=0.02)
        await worker.handle_message(request_message())

        types = [p.type for p in replies.payloads]
        assert types[-1] == "StageResult"
        assert types.count("WorkerProgress") >= 3
        assert set(types[:-1]) == {"WorkerProgress"}

        await asyncio.sleep(0.06)
        assert len(replies.sent) == len(types)

    @pytest.mark.asyncio
    async def test_heartbeat_stops_when_stage_fails(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT)

        async def analyze(request):
            await asyncio.sleep(0.05)
            raise StageFailure("out of disk")

        worker = Worker(Stage.ANALYZER, analyze, replies, heartbeat_interval=0.01)
        await worker.handle_message(request_message())
        sent = len(replies.sent)

        await asyncio.sleep(0.05)
        assert len(replies.sent) == sent
        assert replies.payloads[-1].type == "WorkerError"

    @pytest.mark.asyncio
    async def test_stage_failure_becomes_worker_error(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT)

        async def analyze(request):
            raise StageFailure("registry timeout", retryable=True)

        await Worker(Stage.ANALYZER, analyze, replies).handle_message(request_message())

        assert replies.payloads[-1] == WorkerError(
            stage=Stage.ANALYZER, job_id=11, reason="registry timeout", retryable=True
        )

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_not_retryable(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT)

        async def analyze(request):
            raise KeyError("projectType")

        await Worker(Stage.ANALYZER, analyze, replies).handle_message(request_message())

        error = replies.payloads[-1]
        assert isinstance(error, WorkerError)
        assert error.retryable is False
        assert error.reason.startswith("KeyError")

    @pytest.mark.asyncio
    async def test_request_for_other_stage_is_ignored(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT)

        async def analyze(request):
            raise AssertionError("must not run")

        await Worker(Stage.ANALYZER, analyze, replies).handle_message(
            request_message(Stage.SCANNER)
        )
        assert replies.sent == []

    @pytest.mark.asyncio
    async def test_lost_progress_does_not_block_result(self):
        replies = ProgressFailingSender(ORCHESTRATOR_ENDPOINT)

        async def analyze(request):
            return StageOutcome()

        await Worker(Stage.ANALYZER, analyze, replies).handle_message(request_message())
        assert [p.type for p in replies.payloads] == ["StageResult"]

    @pytest.mark.asyncio
    async def test_failed_reply_propagates(self):
        replies = RecordingSender(ORCHESTRATOR_ENDPOINT, fail=True)

        async def analyze(request):
            return StageOutcome()

        with pytest.raises(TransportError):
            await Worker(Stage.ANALYZER, analyze, replies).handle_message(request_message())


class TestEndToEnd:
    """Orchestrator, inbox and two workers wired through the in-memory broker."""

    @pytest.mark.asyncio
    async def test_run_completes(self, tmp_path):
        settings = Settings(**settings_data(database={"url": f"sqlite:///{tmp_path}/state.db"}))
        store = StateStore.from_url(settings.database.url)
        store.create_schema()
        container = setup_container(settings)
        container.register_singleton("state_store", store)

        attempts = []

        async def analyze(request):
            return StageOutcome(issues=1, summary={"packages": 3})

        async def evaluate(request):
            attempts.append(request.attempt)
            if request.attempt == 1:
                raise StageFailure("rules service restarting", retryable=True)
            assert request.upstream["analyzer"]["packages"] == 3
            return StageOutcome(summary={"violations": 0})

        stop = asyncio.Event()
        receiver = container.get("inbox_receiver")
        tasks = [
            asyncio.create_task(receiver.run()),
            asyncio.create_task(run_worker(Stage.ANALYZER, analyze, settings, stop)),
            asyncio.create_task(run_worker(Stage.EVALUATOR, evaluate, settings, stop)),
        ]

        run = store.create_run({"analyzer": {}, "evaluator": {}})
        sender = create_sender(ORCHESTRATOR_ENDPOINT, settings)
        await sender.send(Message.create(run.trace_id, run.id, CreateRun(run_id=run.id)))

        async def wait_for_terminal():
            while True:
                current = await asyncio.to_thread(store.get_run, run.id)
                if current.status.is_terminal:
                    return current
                await asyncio.sleep(0.02)

        try:
            finished = await asyncio.wait_for(wait_for_terminal(), timeout=10)
        finally:
            stop.set()
            receiver.stop()
            await asyncio.gather(*tasks)
            await container.cleanup()

        assert finished.status is RunStatus.FINISHED_WITH_ISSUES
        assert attempts == [1, 2]
        jobs = {j.stage: j for j in store.list_jobs(run.id)}
        assert jobs[Stage.ANALYZER].status is JobStatus.FINISHED_WITH_ISSUES
        assert jobs[Stage.EVALUATOR].status is JobStatus.FINISHED
        assert jobs[Stage.EVALUATOR].retry_count == 1
        assert jobs[Stage.EVALUATOR].result_summary == {"violations": 0, "issues": 0}
        store.dispose()
