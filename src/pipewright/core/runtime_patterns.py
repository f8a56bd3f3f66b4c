"""
Retry helpers shared by the broker adapters.

Broker calls are retried transparently when they fail for transient reasons
(connection problems, timeouts, throttling, server errors). Anything else
surfaces on the first attempt.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from .errors import TransportError

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds of a retry loop. Built from the ``transport_retry`` settings."""

    attempts: int
    base: float
    max_backoff: float

    def backoff(self, attempt: int) -> float:
        """Jittered exponential backoff before retry number ``attempt`` (0-based)."""
        return min(self.max_backoff, self.base * (2**attempt)) * (0.5 + random.random())

    def delays(self) -> Iterator[float]:
        """One backoff per retry, i.e. ``attempts - 1`` of them."""
        for attempt in range(self.attempts - 1):
            yield self.backoff(attempt)


async def retry_with_policy(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[Exception], bool],
    op_name: str = "operation",
) -> T:
    """Run ``op`` until it succeeds, fails permanently or the policy is used up."""
    metrics = get_metrics_collector()
    delays = policy.delays()
    attempt = 1

    while True:
        try:
            return await op()
        except Exception as e:
            if not is_retryable(e):
                raise
            delay = next(delays, None)
            if delay is None:
                logger.error("Giving up", op=op_name, attempts=attempt, error=str(e))
                raise

            metrics.increment("transport_retry_attempts_total", op=op_name)
            logger.warning(
                "Retrying", op=op_name, attempt=attempt, delay_s=round(delay, 3), error=str(e)
            )
            await asyncio.sleep(delay)
            attempt += 1


def is_retryable_error(error: Exception) -> bool:
    """Whether a failed broker call is worth another attempt."""
    if isinstance(error, TransportError):
        return error.retryable

    # ConnectionError and TimeoutError are OSErrors too
    if isinstance(error, OSError):
        return True

    status = getattr(error, "status_code", None)
    return isinstance(status, int) and status in TRANSIENT_STATUS_CODES
