"""
Core orchestration primitives.

The orchestrator and job monitor live in ``pipewright.core.orchestrator`` and
``pipewright.core.monitor``; they are not re-exported here because they depend
on the messaging and storage layers.
"""

from .errors import (
    EndpointConfigurationError,
    InvalidTransitionError,
    MessageDecodeError,
    MonitorEscalation,
    PipewrightError,
    RunNotFoundError,
    StateConflict,
    TransportError,
    UnknownTransportError,
)
from .pipeline import PIPELINE, RunInfo, Stage, StageSpec, StageState
from .state_machine import JOB_STATE_MACHINE, RUN_STATE_MACHINE, JobStatus, RunStatus

__all__ = [
    "PipewrightError",
    "TransportError",
    "EndpointConfigurationError",
    "UnknownTransportError",
    "StateConflict",
    "InvalidTransitionError",
    "MessageDecodeError",
    "RunNotFoundError",
    "MonitorEscalation",
    "PIPELINE",
    "RunInfo",
    "Stage",
    "StageSpec",
    "StageState",
    "JobStatus",
    "RunStatus",
    "JOB_STATE_MACHINE",
    "RUN_STATE_MACHINE",
]
