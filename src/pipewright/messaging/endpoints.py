"""
Endpoint definitions.

An endpoint is a named destination with a fixed set of accepted payload types
and the prefix of its configuration section (``endpoints.<prefix>``). There is
one endpoint per pipeline stage plus the orchestrator inbox, which receives
every worker reply.
"""

from dataclasses import dataclass

from ..core.pipeline import Stage
from .model import (
    CancelRun,
    CreateRun,
    LostJob,
    LostSchedule,
    PayloadBase,
    StageRequest,
    StageResult,
    WorkerError,
    WorkerProgress,
)


@dataclass(frozen=True)
class Endpoint:
    name: str
    config_prefix: str
    accepts: tuple[type[PayloadBase], ...]

    def accepts_payload(self, payload: PayloadBase) -> bool:
        return isinstance(payload, self.accepts)


ORCHESTRATOR_ENDPOINT = Endpoint(
    name="orchestrator",
    config_prefix="orchestrator",
    accepts=(
        CreateRun,
        StageResult,
        WorkerError,
        WorkerProgress,
        LostJob,
        LostSchedule,
        CancelRun,
    ),
)

STAGE_ENDPOINTS: dict[Stage, Endpoint] = {
    stage: Endpoint(
        name=f"{stage.value}-worker", config_prefix=stage.value, accepts=(StageRequest,)
    )
    for stage in Stage
}

ALL_ENDPOINTS: tuple[Endpoint, ...] = (ORCHESTRATOR_ENDPOINT, *STAGE_ENDPOINTS.values())


def endpoint_for_stage(stage: Stage) -> Endpoint:
    """Request endpoint of the worker that executes ``stage``."""
    return STAGE_ENDPOINTS[Stage(stage)]
