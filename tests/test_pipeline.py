"""
Tests for the pipeline topology and per-run scheduling decisions.

Tests cover:
- Execution order of the fixed topology
- Eligibility of stages as jobs settle
- Skipping after required failures, run_after_failure stages
- Required flag defaults and per-run overrides
- Final run status
"""

import pytest

from pipewright.core.pipeline import (
    ANCESTORS,
    EXECUTION_ORDER,
    PIPELINE,
    RunInfo,
    Stage,
    StageSpec,
    StageState,
    calculate_execution_order,
    enabled_stages,
    required_stages,
)
from pipewright.core.state_machine import JobStatus, RunStatus

ALL_STAGES = {stage.value: {} for stage in Stage}


def run_info(configs, **jobs) -> RunInfo:
    return RunInfo.build(1, configs, ((Stage(name), status) for name, status in jobs.items()))


class TestTopology:
    """Test the static DAG."""

    def test_execution_order(self):
        assert EXECUTION_ORDER == [
            Stage.CONFIG,
            Stage.ANALYZER,
            Stage.ADVISOR,
            Stage.SCANNER,
            Stage.EVALUATOR,
            Stage.REPORTER,
            Stage.NOTIFIER,
        ]

    def test_levels_group_independent_stages(self):
        levels = calculate_execution_order(PIPELINE)
        assert [Stage.ADVISOR, Stage.SCANNER] in levels

    def test_ancestors_are_transitive(self):
        assert ANCESTORS[Stage.EVALUATOR] == {
            Stage.CONFIG,
            Stage.ANALYZER,
            Stage.ADVISOR,
            Stage.SCANNER,
        }
        assert ANCESTORS[Stage.CONFIG] == frozenset()

    def test_cycle_is_detected(self):
        cyclic = {
            Stage.CONFIG: StageSpec(Stage.CONFIG, depends_on=(Stage.ANALYZER,)),
            Stage.ANALYZER: StageSpec(Stage.ANALYZER, depends_on=(Stage.CONFIG,)),
        }
        with pytest.raises(ValueError, match="Circular dependency"):
            calculate_execution_order(cyclic)

    def test_notifier_is_optional_by_default(self):
        assert PIPELINE[Stage.NOTIFIER].required is False
        assert all(PIPELINE[s].required for s in Stage if s is not Stage.NOTIFIER)


class TestEnabledAndRequired:
    def test_enabled_stages_follow_job_configs(self):
        assert enabled_stages({"analyzer": {}, "evaluator": {"rules": "x"}}) == {
            Stage.ANALYZER,
            Stage.EVALUATOR,
        }

    def test_none_config_disables_stage(self):
        assert enabled_stages({"analyzer": {}, "advisor": None}) == {Stage.ANALYZER}

    def test_required_override(self):
        configs = {"analyzer": {}, "advisor": {"required": False}, "notifier": {"required": True}}
        assert required_stages(configs) == {Stage.ANALYZER, Stage.NOTIFIER}


class TestNextStages:
    """Port of the scheduling cases of a full pipeline run."""

    def test_config_first_when_configured(self):
        assert run_info(ALL_STAGES).next_stages() == [Stage.CONFIG]

    def test_analyzer_first_without_config(self):
        configs = {k: v for k, v in ALL_STAGES.items() if k != "config"}
        assert run_info(configs).next_stages() == [Stage.ANALYZER]

    def test_nothing_while_analyzer_is_active(self):
        info = run_info(ALL_STAGES, config=JobStatus.FINISHED, analyzer=JobStatus.RUNNING)
        assert info.next_stages() == []
        assert info.stage_state(Stage.ADVISOR) is StageState.WAITING

    def test_advisor_and_scanner_in_parallel(self):
        info = run_info(ALL_STAGES, config=JobStatus.FINISHED, analyzer=JobStatus.FINISHED)
        assert info.next_stages() == [Stage.ADVISOR, Stage.SCANNER]

    def test_evaluator_waits_for_both_branches(self):
        info = run_info(
            ALL_STAGES,
            config=JobStatus.FINISHED,
            analyzer=JobStatus.FINISHED,
            advisor=JobStatus.FINISHED,
            scanner=JobStatus.SCHEDULED,
        )
        assert info.next_stages() == []
        assert info.stage_state(Stage.EVALUATOR) is StageState.WAITING

    def test_evaluator_after_issues_upstream(self):
        info = run_info(
            ALL_STAGES,
            config=JobStatus.FINISHED,
            analyzer=JobStatus.FINISHED_WITH_ISSUES,
            advisor=JobStatus.FINISHED,
            scanner=JobStatus.FINISHED_WITH_ISSUES,
        )
        assert info.next_stages() == [Stage.EVALUATOR]

    def test_unconfigured_stages_are_vacuously_satisfied(self):
        configs = {"analyzer": {}, "evaluator": {}}
        info = run_info(configs)
        assert info.next_stages() == [Stage.ANALYZER]
        assert info.stage_state(Stage.EVALUATOR) is StageState.WAITING
        assert info.stage_state(Stage.ADVISOR) is StageState.NOT_CONFIGURED

        info = run_info(configs, analyzer=JobStatus.FINISHED)
        assert info.next_stages() == [Stage.EVALUATOR]

    def test_reporter_runs_after_analyzer_failure(self):
        info = run_info(ALL_STAGES, config=JobStatus.FINISHED, analyzer=JobStatus.FAILED)
        assert info.next_stages() == [Stage.REPORTER]
        assert info.skipped_stages() == [Stage.ADVISOR, Stage.SCANNER, Stage.EVALUATOR]

    def test_nothing_after_analyzer_failure_without_reporter(self):
        info = run_info({"analyzer": {}, "evaluator": {}}, analyzer=JobStatus.FAILED)
        assert info.next_stages() == []
        assert info.stage_state(Stage.EVALUATOR) is StageState.SKIPPED
        assert info.is_complete()

    def test_reporter_waits_for_active_branch_after_failure(self):
        info = run_info(
            ALL_STAGES,
            config=JobStatus.FINISHED,
            analyzer=JobStatus.FINISHED,
            advisor=JobStatus.FAILED,
            scanner=JobStatus.RUNNING,
        )
        assert info.next_stages() == []
        assert info.stage_state(Stage.EVALUATOR) is StageState.SKIPPED
        assert info.stage_state(Stage.REPORTER) is StageState.WAITING

    def test_config_failure_halts_everything(self):
        info = run_info(ALL_STAGES, config=JobStatus.FAILED)
        assert info.next_stages() == []
        assert info.is_complete()
        assert info.stage_state(Stage.REPORTER) is StageState.SKIPPED

    def test_notifier_after_reporter(self):
        info = run_info(
            ALL_STAGES,
            config=JobStatus.FINISHED,
            analyzer=JobStatus.FAILED,
            reporter=JobStatus.FINISHED,
        )
        assert info.next_stages() == [Stage.NOTIFIER]

    def test_optional_failure_does_not_skip_dependents(self):
        configs = {"analyzer": {}, "advisor": {"required": False}, "evaluator": {}}
        info = run_info(configs, analyzer=JobStatus.FINISHED, advisor=JobStatus.FAILED)
        assert info.next_stages() == [Stage.EVALUATOR]


class TestCompletion:
    def test_zero_enabled_stages_is_complete(self):
        info = run_info({})
        assert info.is_complete()
        assert info.final_status() is RunStatus.FINISHED

    def test_not_complete_with_eligible_stage(self):
        assert not run_info({"analyzer": {}}).is_complete()

    def test_finished(self):
        info = run_info(
            {"analyzer": {}, "evaluator": {}},
            analyzer=JobStatus.FINISHED,
            evaluator=JobStatus.FINISHED,
        )
        assert info.is_complete()
        assert info.final_status() is RunStatus.FINISHED

    def test_issues_make_run_finished_with_issues(self):
        info = run_info(
            {"analyzer": {}, "evaluator": {}},
            analyzer=JobStatus.FINISHED_WITH_ISSUES,
            evaluator=JobStatus.FINISHED,
        )
        assert info.final_status() is RunStatus.FINISHED_WITH_ISSUES

    def test_optional_failure_makes_run_finished_with_issues(self):
        info = run_info(
            {"analyzer": {}, "notifier": {}},
            analyzer=JobStatus.FINISHED,
            notifier=JobStatus.FAILED,
        )
        assert info.is_complete()
        assert info.final_status() is RunStatus.FINISHED_WITH_ISSUES

    def test_required_failure_fails_run(self):
        info = run_info(
            {"analyzer": {}, "advisor": {}, "evaluator": {}},
            analyzer=JobStatus.FINISHED,
            advisor=JobStatus.FAILED,
        )
        assert info.is_complete()
        assert info.final_status() is RunStatus.FAILED
