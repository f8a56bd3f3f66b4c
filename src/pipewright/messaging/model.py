"""
Message model shared by the orchestrator and all workers.

Every message is an envelope of a header (trace and run ID) and one payload
from a closed set of variants. On the wire the header fields are flattened
next to the payload:

    {"traceId": "4f0c...", "runId": 42, "payload": {"type": "StageResult", ...}}

Each payload carries a ``type`` discriminator and a schema ``version``.
Unknown keys are ignored when decoding so that old and new processes can
exchange messages during a rolling upgrade.
"""

import json
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..core.errors import MessageDecodeError
from ..core.pipeline import Stage

SCHEMA_VERSION = 1


class PayloadBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    version: int = SCHEMA_VERSION


class CreateRun(PayloadBase):
    """Sent by the API after it stored a new run."""

    type: Literal["CreateRun"] = "CreateRun"
    run_id: int


class StageRequest(PayloadBase):
    """Asks the worker of ``stage`` to execute a job."""

    type: Literal["StageRequest"] = "StageRequest"
    stage: Stage
    job_id: int
    configuration: dict[str, Any] = Field(default_factory=dict)
    # Result summaries of the settled upstream stages, keyed by stage name
    upstream: dict[str, dict[str, Any]] = Field(default_factory=dict)
    attempt: int = Field(1, ge=1)


class StageResult(PayloadBase):
    """A worker finished its job. ``issues`` counts recoverable problems."""

    type: Literal["StageResult"] = "StageResult"
    stage: Stage
    job_id: int
    issues: int = Field(0, ge=0)
    summary: dict[str, Any] = Field(default_factory=dict)


class WorkerError(PayloadBase):
    """A worker (or the job monitor on its behalf) reports a failed job."""

    type: Literal["WorkerError"] = "WorkerError"
    stage: Stage
    job_id: int | None = None
    reason: str
    retryable: bool = False


class WorkerProgress(PayloadBase):
    """First sign of life of a worker: moves the job to RUNNING."""

    type: Literal["WorkerProgress"] = "WorkerProgress"
    stage: Stage
    job_id: int


class LostJob(PayloadBase):
    """An external monitor lost track of the job of ``stage``."""

    type: Literal["LostJob"] = "LostJob"
    stage: Stage


class LostSchedule(PayloadBase):
    """An active run has no active job; scheduling should be resumed."""

    type: Literal["LostSchedule"] = "LostSchedule"


class CancelRun(PayloadBase):
    type: Literal["CancelRun"] = "CancelRun"
    reason: str = "cancelled"


Payload = Annotated[
    Union[
        CreateRun,
        StageRequest,
        StageResult,
        WorkerError,
        WorkerProgress,
        LostJob,
        LostSchedule,
        CancelRun,
    ],
    Field(discriminator="type"),
]

PAYLOAD_TYPES: tuple[type[PayloadBase], ...] = (
    CreateRun,
    StageRequest,
    StageResult,
    WorkerError,
    WorkerProgress,
    LostJob,
    LostSchedule,
    CancelRun,
)


def new_trace_id() -> str:
    return uuid.uuid4().hex


class MessageHeader(BaseModel):
    """Correlation data, preserved verbatim by every transport."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    trace_id: str = Field(..., alias="traceId", min_length=1)
    run_id: int = Field(..., alias="runId")


class Message(BaseModel):
    """Envelope of header and payload."""

    model_config = ConfigDict(frozen=True)

    header: MessageHeader
    payload: Payload

    @classmethod
    def create(cls, trace_id: str, run_id: int, payload: PayloadBase) -> "Message":
        return cls(header=MessageHeader(trace_id=trace_id, run_id=run_id), payload=payload)

    @property
    def trace_id(self) -> str:
        return self.header.trace_id

    @property
    def run_id(self) -> int:
        return self.header.run_id

    @property
    def payload_type(self) -> str:
        return self.payload.type

    def to_wire(self) -> dict[str, Any]:
        """Flattened wire representation."""
        return {
            "traceId": self.header.trace_id,
            "runId": self.header.run_id,
            "payload": self.payload.model_dump(mode="json"),
        }


class _WireMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    traceId: str = Field(..., min_length=1)
    runId: int
    payload: Payload


_wire_adapter = TypeAdapter(_WireMessage)


def encode_message(message: Message) -> str:
    """Serialize a message to its JSON wire format."""
    return json.dumps(message.to_wire(), separators=(",", ":"))


def decode_message(raw: str | bytes | dict[str, Any]) -> Message:
    """
    Parse a message from its wire format.

    Raises:
        MessageDecodeError: if the body is not JSON or not a valid envelope
    """
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        wire = _wire_adapter.validate_python(data)
    except (ValueError, ValidationError) as e:
        raise MessageDecodeError(f"Malformed message: {e}") from e

    return Message(
        header=MessageHeader(trace_id=wire.traceId, run_id=wire.runId), payload=wire.payload
    )
