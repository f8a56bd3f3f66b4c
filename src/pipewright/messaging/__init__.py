"""
Messaging layer: message model, endpoints and the transport SPI.

Transports are resolved by name from the endpoint configuration:

    >>> from pipewright.messaging import ORCHESTRATOR_ENDPOINT, create_sender
    >>> sender = create_sender(ORCHESTRATOR_ENDPOINT, settings)
    >>> await sender.send(Message.create(trace_id, run_id, CreateRun(run_id=run_id)))
"""

from .endpoints import ORCHESTRATOR_ENDPOINT, STAGE_ENDPOINTS, Endpoint, endpoint_for_stage
from .model import (
    CancelRun,
    CreateRun,
    LostJob,
    LostSchedule,
    Message,
    MessageHeader,
    StageRequest,
    StageResult,
    WorkerError,
    WorkerProgress,
    decode_message,
    encode_message,
    new_trace_id,
)
from .spi import (
    HandlerResult,
    MessageReceiver,
    MessageSender,
    TransportFactory,
    create_receiver,
    create_sender,
    register_transport,
)

__all__ = [
    "Endpoint",
    "ORCHESTRATOR_ENDPOINT",
    "STAGE_ENDPOINTS",
    "endpoint_for_stage",
    "Message",
    "MessageHeader",
    "CreateRun",
    "StageRequest",
    "StageResult",
    "WorkerError",
    "WorkerProgress",
    "LostJob",
    "LostSchedule",
    "CancelRun",
    "encode_message",
    "decode_message",
    "new_trace_id",
    "HandlerResult",
    "MessageSender",
    "MessageReceiver",
    "TransportFactory",
    "create_sender",
    "create_receiver",
    "register_transport",
]
