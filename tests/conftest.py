"""
Global pytest configuration and fixtures for test isolation.

Module level state (the in-memory broker, cached settings, the metrics
collector and the logging context) is reset before every test.
"""

import logging
import random

import pytest

from pipewright.config.settings import Settings, TransportConfig, get_settings
from pipewright.core.orchestrator import Orchestrator
from pipewright.core.pipeline import Stage
from pipewright.core.runtime_patterns import RetryPolicy
from pipewright.messaging.endpoints import Endpoint, endpoint_for_stage
from pipewright.messaging.model import Message
from pipewright.messaging.spi import MessageSender
from pipewright.messaging.transports import memory
from pipewright.observability.logging import clear_message_context
from pipewright.observability.metrics import _reset_metrics_for_tests
from pipewright.storage.repository import StateStore

FAST_RETRY = RetryPolicy(attempts=3, base=0.001, max_backoff=0.002)


def reset_all_global_state():
    """Reset all global state and reseed the RNG."""
    random.seed(1337)
    memory.reset()
    _reset_metrics_for_tests()
    get_settings.cache_clear()
    clear_message_context()


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation to ensure clean state for each test."""
    reset_all_global_state()
    yield


def settings_data(**overrides) -> dict:
    """Complete settings with every endpoint on the in-memory transport."""
    endpoints = {
        "orchestrator": {
            "sender": {"type": "memory", "queue_name": "orchestrator"},
            "receiver": {"type": "memory", "queue_name": "orchestrator"},
        }
    }
    for stage in Stage:
        endpoints[stage.value] = {
            "sender": {"type": "memory", "queue_name": stage.value},
            "receiver": {"type": "memory", "queue_name": stage.value},
        }

    data = {
        "database": {"url": "sqlite:///:memory:"},
        "orchestrator": {"max_retries": 2},
        "monitor": {
            "sweep_interval": 0.05,
            "lost_jobs_min_age": 0,
            "heartbeat_timeout": 60,
            "max_runtime": {stage.value: 3600 for stage in Stage},
        },
        "transport_retry": {"attempts": 3, "base_backoff": 0.001, "max_backoff": 0.002},
        "brokers": {"memory": {"poll_interval": 0.01}},
        "endpoints": endpoints,
    }
    data.update(overrides)
    return data


@pytest.fixture
def settings() -> Settings:
    return Settings(**settings_data())


@pytest.fixture
def store():
    state_store = StateStore.from_url("sqlite:///:memory:")
    state_store.create_schema()
    yield state_store
    state_store.dispose()


class RecordingSender(MessageSender):
    """Sender that keeps every message instead of publishing it."""

    transport_name = "recording"

    def __init__(self, endpoint: Endpoint, fail: bool = False):
        super().__init__(
            endpoint, TransportConfig(type="recording", queue_name=endpoint.name), FAST_RETRY
        )
        self.sent: list[Message] = []
        self.cancelled: list[int] = []
        self.fail = fail

    async def _send(self, body: str, message: Message) -> None:
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.sent.append(message)

    async def cancel(self, run_id: int) -> None:
        self.cancelled.append(run_id)

    @property
    def payloads(self):
        return [m.payload for m in self.sent]


@pytest.fixture
def senders() -> dict[Stage, RecordingSender]:
    return {stage: RecordingSender(endpoint_for_stage(stage)) for stage in Stage}


@pytest.fixture
def orchestrator(store, senders) -> Orchestrator:
    return Orchestrator(store, senders, max_retries=2, heartbeat_timeout=60)


def published_stages(senders: dict[Stage, RecordingSender]) -> dict[Stage, int]:
    """Number of requests published per stage."""
    return {stage: len(s.sent) for stage, s in senders.items() if s.sent}


@pytest.fixture
def root_logging():
    """Restore root logger handlers replaced by ``setup_logging``."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
