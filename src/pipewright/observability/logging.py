"""
Structured logging for pipewright with trace and run ID support.
"""

import json
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Context variables for message correlation
trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)
run_id_ctx: ContextVar[int | None] = ContextVar("run_id", default=None)

# Global logger cache
_loggers: dict[str, "StructuredLogger"] = {}

# Attributes every LogRecord carries; anything else is a structured field
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
    }
)

_FORMATTER_OWNED = frozenset({"trace_id", "run_id", "op", "ms", "duration_ms"})

JOB_STATUS_LOGGER_NAME = "pipewright.job_status"


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured logs with trace and run ID support."""

    def format(self, record: logging.LogRecord) -> str:
        trace_id = getattr(record, "trace_id", None) or trace_id_ctx.get() or "-"
        run_id = getattr(record, "run_id", None) or run_id_ctx.get()
        run_part = f" run={run_id}" if run_id is not None else ""

        parts = record.name.split(".")
        mod = parts[-1] if parts else record.name
        op = getattr(record, "op", None) or record.funcName or "-"

        duration = getattr(record, "ms", getattr(record, "duration_ms", None))
        ms_part = f" ms={duration:.1f}" if duration is not None else ""

        timestamp = datetime.now(UTC).isoformat()
        msg = record.getMessage()

        extra_fields = ""
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in _FORMATTER_OWNED:
                extra_fields += f" {key}={value}"

        line = (
            f"t={timestamp} level={record.levelname} trace={trace_id}{run_part} "
            f'mod={mod} op={op}{ms_part} msg="{msg}"{extra_fields}'
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger:
    """Structured logger with trace ID and keyword field support."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: bool = False, **kwargs):
        extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_ATTRS}
        extra.setdefault("trace_id", trace_id_ctx.get())
        extra.setdefault("run_id", run_id_ctx.get())
        self.logger.log(level, msg, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, **kwargs)

    def exception(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, exc_info=True, **kwargs)

    def timed(self, msg: str, duration_ms: float, **kwargs):
        """Log with timing information."""
        kwargs["ms"] = duration_ms
        self.info(msg, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration with structured formatter."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    # Broker and database clients are chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)


def set_message_context(trace_id: str | None, run_id: int | None) -> None:
    """Set trace and run ID in the current context."""
    trace_id_ctx.set(trace_id)
    run_id_ctx.set(run_id)


def get_trace_id() -> str | None:
    """Get current trace ID from context."""
    return trace_id_ctx.get()


def get_run_id() -> int | None:
    """Get current run ID from context."""
    return run_id_ctx.get()


def clear_message_context() -> None:
    """Clear trace and run ID from current context."""
    trace_id_ctx.set(None)
    run_id_ctx.set(None)


async def run_with_status_logging(
    job_name: str, block: Callable[[dict[str, Any]], Awaitable[None]]
) -> bool:
    """
    Run a periodic job and emit one JSON status line describing the execution.

    The block receives a mutable dict it can fill with custom properties such as
    ``processedCount`` or ``failedCount``. Returns whether the block succeeded.
    Exceptions are logged and swallowed so that the caller's schedule keeps going.
    """
    status_logger = logging.getLogger(JOB_STATUS_LOGGER_NAME)
    start = time.perf_counter()
    properties: dict[str, Any] = {}

    try:
        await block(properties)
    except Exception as e:
        status = {
            "job": job_name,
            "status": "failure",
            "error": f"{type(e).__name__}: {e}",
            "executionTimeMs": round((time.perf_counter() - start) * 1000),
            "timestamp": datetime.now(UTC).isoformat(),
        }
        get_logger(__name__).exception(f"Execution of job '{job_name}' failed")
        status_logger.info(json.dumps(status))
        return False

    status = {
        "job": job_name,
        **properties,
        "status": "success",
        "executionTimeMs": round((time.perf_counter() - start) * 1000),
        "timestamp": datetime.now(UTC).isoformat(),
    }
    status_logger.info(json.dumps(status, default=str))
    return True
