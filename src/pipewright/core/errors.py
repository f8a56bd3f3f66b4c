"""
Error classes for the orchestration engine.

Transport errors are retried inside the broker adapters and only surface to
callers once the local retry budget is used up. State conflicts are expected
under at-least-once delivery and are discarded by the orchestrator, never
propagated out of a message handler.

Worker failures are not exceptions: a worker reports them as a ``WorkerError``
message payload (see ``pipewright.messaging.model``).
"""


class PipewrightError(Exception):
    """Base exception for pipewright."""


class TransportError(PipewrightError):
    """
    A broker operation failed.

    Raised when the broker is unreachable or a message cannot be serialized.
    For a failed send the outcome is unknown: the message may or may not have
    been delivered.
    """

    def __init__(self, message: str, *, transport: str | None = None, retryable: bool = True):
        super().__init__(message)
        self.transport = transport
        self.retryable = retryable


class MessageDecodeError(PipewrightError):
    """An inbound message body is not a valid envelope for the endpoint."""


class EndpointConfigurationError(PipewrightError):
    """An endpoint has no usable transport configuration."""


class UnknownTransportError(EndpointConfigurationError):
    """No factory is registered for the configured transport name."""


class StateConflict(PipewrightError):
    """
    A job or run is already in a terminal state.

    Signals a duplicate or stale message. Handlers treat this as a no-op.
    """

    def __init__(self, message: str, *, run_id: int | None = None, stage: str | None = None):
        super().__init__(message)
        self.run_id = run_id
        self.stage = stage


class InvalidTransitionError(PipewrightError):
    """A status transition that the state machine does not allow."""


class RunNotFoundError(PipewrightError):
    """The referenced run does not exist in the state store."""


class MonitorEscalation(PipewrightError):
    """The job monitor forced a job into FAILED after liveness checks ran out."""

    def __init__(self, message: str, *, run_id: int, stage: str, reason: str):
        super().__init__(message)
        self.run_id = run_id
        self.stage = stage
        self.reason = reason
