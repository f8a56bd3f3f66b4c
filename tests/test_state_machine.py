"""
Tests for the run and job status machines.
"""

import pytest

from pipewright.core.errors import InvalidTransitionError
from pipewright.core.state_machine import (
    JOB_STATE_MACHINE,
    JOB_TERMINAL_STATUSES,
    RUN_STATE_MACHINE,
    JobStatus,
    RunStatus,
    StatusMachine,
    Transition,
)


class TestJobStateMachine:
    """Test job status transitions."""

    def test_forward_path(self):
        assert JOB_STATE_MACHINE.can_transition(JobStatus.CREATED, JobStatus.SCHEDULED)
        assert JOB_STATE_MACHINE.can_transition(JobStatus.SCHEDULED, JobStatus.RUNNING)
        assert JOB_STATE_MACHINE.can_transition(JobStatus.RUNNING, JobStatus.FINISHED)

    def test_running_is_optional(self):
        assert JOB_STATE_MACHINE.can_transition(JobStatus.SCHEDULED, JobStatus.FINISHED)
        assert JOB_STATE_MACHINE.can_transition(JobStatus.SCHEDULED, JobStatus.FAILED)

    def test_retry_goes_back_to_scheduled(self):
        assert JOB_STATE_MACHINE.can_transition(JobStatus.RUNNING, JobStatus.SCHEDULED)

    @pytest.mark.parametrize("terminal", sorted(JOB_TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_have_no_exit(self, terminal):
        assert terminal.is_terminal
        assert JOB_STATE_MACHINE.targets(terminal) == set()
        with pytest.raises(InvalidTransitionError):
            JOB_STATE_MACHINE.validate(terminal, JobStatus.RUNNING)

    def test_no_backwards_transition(self):
        assert not JOB_STATE_MACHINE.can_transition(JobStatus.RUNNING, JobStatus.CREATED)


class TestRunStateMachine:
    def test_start_and_finalize(self):
        RUN_STATE_MACHINE.validate(RunStatus.CREATED, RunStatus.ACTIVE)
        RUN_STATE_MACHINE.validate(RunStatus.ACTIVE, RunStatus.FINISHED_WITH_ISSUES)

    def test_finalized_run_cannot_restart(self):
        with pytest.raises(InvalidTransitionError, match="FAILED -> ACTIVE"):
            RUN_STATE_MACHINE.validate(RunStatus.FAILED, RunStatus.ACTIVE)

    def test_active_is_not_terminal(self):
        assert not RunStatus.ACTIVE.is_terminal
        assert RunStatus.FINISHED.is_terminal


class TestStatusMachine:
    def test_custom_machine(self):
        machine = StatusMachine(
            "custom", [Transition(RunStatus.CREATED, RunStatus.ACTIVE, "start")]
        )
        assert machine.targets(RunStatus.CREATED) == {RunStatus.ACTIVE}
        assert machine.transitions[0].event == "start"
        assert not machine.can_transition(RunStatus.ACTIVE, RunStatus.CREATED)
