"""
Performance probing: OpenTelemetry spans plus timed structured log lines.
"""

import contextlib
import time

from opentelemetry import trace

from .logging import get_logger, get_trace_id

log = get_logger("pipewright.probe")

tracer = trace.get_tracer("pipewright")


@contextlib.contextmanager
def probe(op: str, **labels):
    """
    Performance probe context manager.

    Opens a span named ``op`` (a no-op unless an OpenTelemetry SDK is configured)
    and logs one line with the duration and outcome when the block exits.

    Args:
        op: Operation name (e.g., "orchestrator.handle_message")
        **labels: Additional labels, attached to the span and the log line
    """
    start_time = time.perf_counter()
    ok = "true"
    error_type = None

    with tracer.start_as_current_span(op) as span:
        for key, value in labels.items():
            span.set_attribute(key, str(value))
        trace_id = get_trace_id()
        if trace_id:
            span.set_attribute("pipewright.trace_id", trace_id)
        try:
            yield span
        except Exception as e:
            ok = "false"
            error_type = type(e).__name__
            span.record_exception(e)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log.debug(
                f"op={op} ok={ok}"
                + (f" error={error_type}" if error_type else "")
                + "".join(f" {k}={v}" for k, v in labels.items()),
                ms=duration_ms,
            )


def async_timed(op: str):
    """Decorator wrapping a coroutine function in a probe."""

    def decorator(func):
        async def wrapper(*args, **kwargs):
            with probe(op):
                return await func(*args, **kwargs)

        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator
