"""
Observability for pipewright: structured logging, probes and metrics.

Every inbound message sets the trace and run ID context, so all log lines
written while handling it carry ``trace=<traceId> run=<runId>``:

    >>> from pipewright.observability.logging import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Scheduled stage", stage="analyzer", job_id=7)

Configuration:
    - PIPEWRIGHT_OBSERVABILITY__LOG_LEVEL=INFO
"""

from .logging import get_logger, run_with_status_logging, setup_logging
from .metrics import get_metrics_collector
from .probe import probe

__all__ = [
    "get_logger",
    "setup_logging",
    "run_with_status_logging",
    "get_metrics_collector",
    "probe",
]
