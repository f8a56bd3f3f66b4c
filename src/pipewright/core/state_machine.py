"""
Status state machines for runs and jobs.

Both machines only move forward: once a status is terminal no further
transition is accepted. The orchestrator validates every status change against
these tables before it is written to the state store.
"""

from dataclasses import dataclass
from enum import Enum

from ..observability.logging import get_logger
from .errors import InvalidTransitionError

logger = get_logger(__name__)


class JobStatus(str, Enum):
    """Status of the job executing one stage of a run."""

    CREATED = "CREATED"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    FINISHED_WITH_ISSUES = "FINISHED_WITH_ISSUES"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in JOB_TERMINAL_STATUSES


class RunStatus(str, Enum):
    """Status of a whole pipeline run."""

    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    FINISHED = "FINISHED"
    FINISHED_WITH_ISSUES = "FINISHED_WITH_ISSUES"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in RUN_TERMINAL_STATUSES


JOB_TERMINAL_STATUSES = frozenset(
    {JobStatus.FINISHED, JobStatus.FINISHED_WITH_ISSUES, JobStatus.FAILED}
)
JOB_ACTIVE_STATUSES = frozenset({JobStatus.CREATED, JobStatus.SCHEDULED, JobStatus.RUNNING})
RUN_TERMINAL_STATUSES = frozenset(
    {RunStatus.FINISHED, RunStatus.FINISHED_WITH_ISSUES, RunStatus.FAILED}
)


@dataclass(frozen=True)
class Transition:
    """An allowed status change, optionally named by the event that causes it."""

    from_state: Enum
    to_state: Enum
    event: str | None = None


class StatusMachine:
    """
    Forward-only finite state machine over a status enum.

    Unlike a workflow engine this class holds no current state of its own; the
    current status lives in the state store and is passed in for validation.
    """

    def __init__(self, name: str, transitions: list[Transition]):
        self.name = name
        self.transitions = transitions
        self._allowed: dict[Enum, set[Enum]] = {}
        for t in transitions:
            self._allowed.setdefault(t.from_state, set()).add(t.to_state)

    def can_transition(self, from_state: Enum, to_state: Enum) -> bool:
        """Check whether ``from_state -> to_state`` is allowed."""
        return to_state in self._allowed.get(from_state, set())

    def validate(self, from_state: Enum, to_state: Enum) -> None:
        """Raise ``InvalidTransitionError`` unless the transition is allowed."""
        if not self.can_transition(from_state, to_state):
            logger.warning(
                f"Rejected {self.name} transition",
                from_state=from_state.value,
                to_state=to_state.value,
            )
            raise InvalidTransitionError(
                f"{self.name}: transition {from_state.value} -> {to_state.value} is not allowed"
            )

    def targets(self, from_state: Enum) -> set[Enum]:
        """All states reachable in one step from ``from_state``."""
        return set(self._allowed.get(from_state, set()))


def _terminal_transitions(sources, targets, event):
    return [Transition(s, t, event) for s in sources for t in targets]


JOB_STATE_MACHINE = StatusMachine(
    "job",
    [
        Transition(JobStatus.CREATED, JobStatus.SCHEDULED, "publish"),
        Transition(JobStatus.SCHEDULED, JobStatus.RUNNING, "progress"),
        # A retried job goes back on the queue without leaving SCHEDULED/RUNNING
        Transition(JobStatus.SCHEDULED, JobStatus.SCHEDULED, "retry"),
        Transition(JobStatus.RUNNING, JobStatus.SCHEDULED, "retry"),
        *_terminal_transitions(
            (JobStatus.CREATED, JobStatus.SCHEDULED, JobStatus.RUNNING),
            JOB_TERMINAL_STATUSES,
            "complete",
        ),
    ],
)

RUN_STATE_MACHINE = StatusMachine(
    "run",
    [
        Transition(RunStatus.CREATED, RunStatus.ACTIVE, "start"),
        *_terminal_transitions(
            (RunStatus.CREATED, RunStatus.ACTIVE), RUN_TERMINAL_STATUSES, "finalize"
        ),
    ],
)
