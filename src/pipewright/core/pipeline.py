"""
Fixed pipeline topology and per-run scheduling decisions.

The pipeline is a static DAG of stages. Which stages take part in a run is
decided by the run's job configuration: a stage without configuration is not
part of the run and counts as satisfied for everything that depends on it.

``RunInfo`` is a pure, in-memory view over a run's jobs. It answers the
questions the orchestrator asks after every transition: which stages can be
scheduled now, which will never run, and whether the run is complete.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .state_machine import JobStatus, RunStatus


class Stage(str, Enum):
    """Pipeline stages, one worker type each."""

    CONFIG = "config"
    ANALYZER = "analyzer"
    ADVISOR = "advisor"
    SCANNER = "scanner"
    EVALUATOR = "evaluator"
    REPORTER = "reporter"
    NOTIFIER = "notifier"


class StageState(str, Enum):
    """Derived status of a stage within one run. Never stored."""

    NOT_CONFIGURED = "not_configured"
    WAITING = "waiting"
    ELIGIBLE = "eligible"
    ACTIVE = "active"
    FINISHED = "finished"
    FINISHED_WITH_ISSUES = "finished_with_issues"
    FAILED = "failed"
    SKIPPED = "skipped"


SETTLED_STAGE_STATES = frozenset(
    {
        StageState.NOT_CONFIGURED,
        StageState.FINISHED,
        StageState.FINISHED_WITH_ISSUES,
        StageState.FAILED,
        StageState.SKIPPED,
    }
)


@dataclass(frozen=True)
class StageSpec:
    """Static scheduling rules of one stage."""

    stage: Stage
    depends_on: tuple[Stage, ...] = ()
    # Still runs after a required stage failed (reporting and notification)
    run_after_failure: bool = False
    # A failure of this stage stops the whole pipeline, including run_after_failure stages
    halts_pipeline: bool = False
    # Default for whether a failure of this stage fails the run
    required: bool = True


PIPELINE: dict[Stage, StageSpec] = {
    spec.stage: spec
    for spec in (
        StageSpec(Stage.CONFIG, halts_pipeline=True),
        StageSpec(Stage.ANALYZER, depends_on=(Stage.CONFIG,)),
        StageSpec(Stage.ADVISOR, depends_on=(Stage.ANALYZER,)),
        StageSpec(Stage.SCANNER, depends_on=(Stage.ANALYZER,)),
        StageSpec(Stage.EVALUATOR, depends_on=(Stage.ADVISOR, Stage.SCANNER)),
        StageSpec(Stage.REPORTER, depends_on=(Stage.EVALUATOR,), run_after_failure=True),
        StageSpec(
            Stage.NOTIFIER, depends_on=(Stage.REPORTER,), run_after_failure=True, required=False
        ),
    )
}


def calculate_execution_order(pipeline: Mapping[Stage, StageSpec]) -> list[list[Stage]]:
    """Group stages into levels; every stage only depends on earlier levels."""
    in_degree = dict.fromkeys(pipeline, 0)
    graph: dict[Stage, list[Stage]] = {stage: [] for stage in pipeline}

    for stage, spec in pipeline.items():
        for dep in spec.depends_on:
            if dep in pipeline:
                graph[dep].append(stage)
                in_degree[stage] += 1

    levels = []
    remaining = set(pipeline)

    while remaining:
        ready = sorted((s for s in remaining if in_degree[s] == 0), key=_stage_index)
        if not ready:
            raise ValueError("Circular dependency detected in pipeline topology")
        levels.append(ready)
        for stage in ready:
            remaining.remove(stage)
            for dependent in graph[stage]:
                in_degree[dependent] -= 1

    return levels


def _stage_index(stage: Stage) -> int:
    return list(Stage).index(stage)


def _ancestors(pipeline: Mapping[Stage, StageSpec]) -> dict[Stage, frozenset[Stage]]:
    result: dict[Stage, frozenset[Stage]] = {}
    for level in calculate_execution_order(pipeline):
        for stage in level:
            acc: set[Stage] = set()
            for dep in pipeline[stage].depends_on:
                acc.add(dep)
                acc |= result[dep]
            result[stage] = frozenset(acc)
    return result


EXECUTION_ORDER: list[Stage] = [s for level in calculate_execution_order(PIPELINE) for s in level]
ANCESTORS: dict[Stage, frozenset[Stage]] = _ancestors(PIPELINE)


def enabled_stages(job_configs: Mapping[str, Any]) -> frozenset[Stage]:
    """Stages that take part in a run according to its job configuration."""
    return frozenset(s for s in Stage if job_configs.get(s.value) is not None)


def required_stages(job_configs: Mapping[str, Any]) -> frozenset[Stage]:
    """
    Stages whose failure fails the run.

    A stage configuration may override the topology default with a boolean
    ``required`` key.
    """
    result = set()
    for stage in enabled_stages(job_configs):
        config = job_configs.get(stage.value) or {}
        override = config.get("required") if isinstance(config, Mapping) else None
        if override if override is not None else PIPELINE[stage].required:
            result.add(stage)
    return frozenset(result)


@dataclass
class RunInfo:
    """Scheduling view over one run: enabled stages and the status of their jobs."""

    run_id: int
    enabled: frozenset[Stage]
    required: frozenset[Stage]
    jobs: dict[Stage, JobStatus] = field(default_factory=dict)

    @classmethod
    def build(
        cls, run_id: int, job_configs: Mapping[str, Any], jobs: Iterable[tuple[Stage, JobStatus]]
    ) -> "RunInfo":
        return cls(
            run_id=run_id,
            enabled=enabled_stages(job_configs),
            required=required_stages(job_configs),
            jobs=dict(jobs),
        )

    def has_required_failure(self) -> bool:
        return any(
            status is JobStatus.FAILED and stage in self.required
            for stage, status in self.jobs.items()
        )

    def is_halted(self) -> bool:
        """A failed stage with ``halts_pipeline`` stops all further scheduling."""
        return any(
            status is JobStatus.FAILED and PIPELINE[stage].halts_pipeline
            for stage, status in self.jobs.items()
        )

    def stage_state(self, stage: Stage) -> StageState:
        if stage not in self.enabled:
            return StageState.NOT_CONFIGURED

        status = self.jobs.get(stage)
        if status is not None:
            if status is JobStatus.FINISHED:
                return StageState.FINISHED
            if status is JobStatus.FINISHED_WITH_ISSUES:
                return StageState.FINISHED_WITH_ISSUES
            if status is JobStatus.FAILED:
                return StageState.FAILED
            return StageState.ACTIVE

        if self.is_halted():
            return StageState.SKIPPED
        if self.has_required_failure() and not PIPELINE[stage].run_after_failure:
            return StageState.SKIPPED

        for ancestor in ANCESTORS[stage]:
            if self.stage_state(ancestor) not in SETTLED_STAGE_STATES:
                return StageState.WAITING
        return StageState.ELIGIBLE

    def stage_states(self) -> dict[Stage, StageState]:
        return {stage: self.stage_state(stage) for stage in EXECUTION_ORDER}

    def next_stages(self) -> list[Stage]:
        """Stages whose job can be created and published now, in pipeline order."""
        return [s for s in EXECUTION_ORDER if self.stage_state(s) is StageState.ELIGIBLE]

    def skipped_stages(self) -> list[Stage]:
        return [s for s in EXECUTION_ORDER if self.stage_state(s) is StageState.SKIPPED]

    def is_complete(self) -> bool:
        """True once every stage is settled, i.e. no job is active or pending."""
        return all(state in SETTLED_STAGE_STATES for state in self.stage_states().values())

    def final_status(self) -> RunStatus:
        """Terminal run status derived from the job outcomes."""
        if self.has_required_failure():
            return RunStatus.FAILED
        for stage, status in self.jobs.items():
            if status is JobStatus.FINISHED_WITH_ISSUES:
                return RunStatus.FINISHED_WITH_ISSUES
            if status is JobStatus.FAILED and stage not in self.required:
                return RunStatus.FINISHED_WITH_ISSUES
        return RunStatus.FINISHED
