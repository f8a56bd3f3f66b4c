"""
Orchestration metrics on the OpenTelemetry metrics API.

Without a configured SDK meter provider the instruments are no-ops, so the
collector is always safe to use. Local tallies are kept alongside for health
reporting and tests.
"""

from collections import defaultdict

from opentelemetry import metrics
from opentelemetry.metrics import Counter as OTelCounter
from opentelemetry.metrics import Meter

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection for the orchestrator and job monitor."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, OTelCounter] = {}
        self._totals: dict[str, int] = defaultdict(int)
        self._setup_default_metrics()

    def _setup_default_metrics(self):
        """Setup default orchestration metrics."""
        self.counter("messages_handled_total", "Inbound messages processed by type")
        self.counter("duplicates_discarded_total", "Messages discarded as duplicate or stale")
        self.counter("jobs_scheduled_total", "Stage requests published")
        self.counter("job_retries_total", "Stage requests republished after a retryable failure")
        self.counter("jobs_completed_total", "Jobs moved to a terminal status")
        self.counter("runs_finalized_total", "Runs moved to a terminal status")
        self.counter("monitor_escalations_total", "Jobs failed by the job monitor")
        self.counter("receive_errors_total", "Malformed or unhandled inbound messages")

    def counter(self, name: str, description: str = "", unit: str = "1") -> OTelCounter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"pipewright_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def increment(self, name: str, amount: int = 1, **attributes) -> None:
        """Increment a counter and the matching local tally."""
        self.counter(name).add(amount, attributes={k: str(v) for k, v in attributes.items()})
        self._totals[name] += amount

    def total(self, name: str) -> int:
        """Local tally for a counter since process start."""
        return self._totals[name]

    def snapshot(self) -> dict[str, int]:
        return dict(self._totals)


_metrics_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(metrics.get_meter("pipewright"))
    return _metrics_collector


def _reset_metrics_for_tests() -> None:
    global _metrics_collector
    _metrics_collector = None
