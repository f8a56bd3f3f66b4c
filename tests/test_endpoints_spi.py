"""
Tests for endpoint definitions and transport resolution.
"""

import pytest
from conftest import settings_data

from pipewright.config.settings import Settings
from pipewright.core.errors import EndpointConfigurationError, UnknownTransportError
from pipewright.core.pipeline import Stage
from pipewright.messaging.endpoints import (
    ALL_ENDPOINTS,
    ORCHESTRATOR_ENDPOINT,
    STAGE_ENDPOINTS,
    endpoint_for_stage,
)
from pipewright.messaging.model import LostJob, StageRequest, StageResult
from pipewright.messaging.spi import (
    HandlerResult,
    create_receiver,
    create_sender,
    get_transport_factory,
    registered_transports,
)


async def noop(message):
    return HandlerResult.CONTINUE


class TestEndpoints:
    def test_one_endpoint_per_stage(self):
        assert set(STAGE_ENDPOINTS) == set(Stage)
        assert len(ALL_ENDPOINTS) == len(Stage) + 1
        assert endpoint_for_stage("scanner").name == "scanner-worker"
        assert endpoint_for_stage(Stage.SCANNER).config_prefix == "scanner"

    def test_inbox_accepts_replies_only(self):
        assert ORCHESTRATOR_ENDPOINT.accepts_payload(StageResult(stage=Stage.CONFIG, job_id=1))
        assert ORCHESTRATOR_ENDPOINT.accepts_payload(LostJob(stage=Stage.CONFIG))
        assert not ORCHESTRATOR_ENDPOINT.accepts_payload(
            StageRequest(stage=Stage.CONFIG, job_id=1)
        )


class TestTransportResolution:
    """Test that misconfigured endpoints fail fast."""

    def test_builtin_transports_are_registered(self):
        assert {"memory", "redis", "sqs"} <= set(registered_transports())
        assert get_transport_factory("memory").name == "memory"

    def test_unknown_transport(self):
        with pytest.raises(UnknownTransportError, match="kafka"):
            get_transport_factory("kafka")

    def test_unknown_transport_in_endpoint(self):
        data = settings_data()
        data["endpoints"]["orchestrator"]["sender"]["type"] = "kafka"
        with pytest.raises(UnknownTransportError):
            create_sender(ORCHESTRATOR_ENDPOINT, Settings(**data))

    def test_missing_endpoint_section(self):
        data = settings_data()
        del data["endpoints"]["advisor"]
        with pytest.raises(EndpointConfigurationError, match="endpoints.advisor.sender"):
            create_sender(endpoint_for_stage(Stage.ADVISOR), Settings(**data))

    def test_missing_side(self):
        data = settings_data()
        del data["endpoints"]["orchestrator"]["receiver"]
        with pytest.raises(EndpointConfigurationError, match="orchestrator.receiver"):
            create_receiver(ORCHESTRATOR_ENDPOINT, Settings(**data), noop)

    def test_missing_broker_section(self):
        data = settings_data(brokers={})
        with pytest.raises(EndpointConfigurationError, match="brokers.memory"):
            create_sender(ORCHESTRATOR_ENDPOINT, Settings(**data))

    def test_invalid_broker_options(self):
        data = settings_data(brokers={"memory": {"poll_interval": -1}})
        with pytest.raises(ValueError):
            create_receiver(ORCHESTRATOR_ENDPOINT, Settings(**data), noop)
