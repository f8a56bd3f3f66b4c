"""
pipewright - distributed job orchestration for multi-stage analysis pipelines.

A run executes the stages config, analyzer, advisor, scanner, evaluator,
reporter and notifier as independently deployed workers. The orchestrator
exchanges typed messages with the workers over an interchangeable broker
(SQS, Redis Streams or in-process), keeps run and job state in a relational
store and decides the outcome of every run. A job monitor recovers jobs whose
workers crashed or hang.

Quick Start:
    $ export PIPEWRIGHT_ORCHESTRATOR__MAX_RETRIES=2
    $ pipewright --config pipewright.json init-db
    $ pipewright --config pipewright.json orchestrator

Configuration:
    - PIPEWRIGHT_DATABASE__URL=postgresql+psycopg://...
    - PIPEWRIGHT_MONITOR__SWEEP_INTERVAL=60
    - PIPEWRIGHT_ENDPOINTS__ANALYZER__SENDER__TYPE=sqs
    - PIPEWRIGHT_OBSERVABILITY__LOG_LEVEL=INFO
"""

__version__ = "1.0.0"

from .core.pipeline import Stage, StageState
from .core.state_machine import JobStatus, RunStatus

__all__ = ["__version__", "Stage", "StageState", "JobStatus", "RunStatus"]
