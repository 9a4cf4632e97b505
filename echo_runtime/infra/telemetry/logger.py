"""
Structured Logger
==================

Structured logging for the runtime: event names plus keyword fields,
rendered either as JSON lines or as a compact human-readable line.

Design:
  - Event-style calls: ``log.info("model_loaded", model=..., backend=...)``
  - Request context (request id, pipeline stage) injected from context vars
  - stdlib ``logging`` underneath, so host applications keep control of handlers
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# ── Context Variables ──────────────────────────────────────────────

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_stage: ContextVar[str | None] = ContextVar("stage", default=None)

def set_request_context(*, request_id: str | None = None, stage: str | None = None) -> None:
    """Set request-scoped context for log enrichment."""
    if request_id is not None:
        _request_id.set(request_id)
    if stage is not None:
        _stage.set(stage)

def clear_request_context() -> None:
    _request_id.set(None)
    _stage.set(None)

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "pathname", "filename", "module", "levelno", "levelname",
    "thread", "threadName", "process", "processName", "msecs",
    "taskName", "message",
})

_JSON_SAFE = (str, int, float, bool, type(None))

# ── Structured Formatter ──────────────────────────────────────────

class StructuredFormatter(logging.Formatter):
    """Formatter that renders event name, context and extra fields."""

    def __init__(self, *, json_output: bool = True):
        super().__init__()
        self._json = json_output
        self._pid = os.getpid()

    def _fields(self, record: logging.LogRecord) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            fields[key] = val if isinstance(val, _JSON_SAFE) else str(val)
        return fields

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "pid": self._pid,
        }
        context = {
            k: v
            for k, v in (("request_id", _request_id.get()), ("stage", _stage.get()))
            if v is not None
        }
        if context:
            entry["context"] = context

        fields = self._fields(record)
        if fields:
            entry["data"] = fields

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)

        req = context.get("request_id", "-")[:8]
        data = " ".join(f"{k}={v}" for k, v in fields.items())
        line = (
            f"{entry['timestamp']} | {entry['level']:8s} | {req} | "
            f"{entry['logger']} | {entry['event']}"
        )
        if data:
            line = f"{line} | {data}"
        if "exception" in entry:
            line = f"{line}\n{''.join(entry['exception']['traceback'])}"
        return line

# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Thin wrapper over a stdlib logger taking event names and keyword fields.

    Usage:
        log = get_logger(__name__)
        log.info("model_loaded", model="core.onnx", backend="GPU")
        log.warning("telemetry_unavailable", reason="no battery sensor")
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def _log(self, level: int, event: str, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=kwargs, stacklevel=3)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        if exc is not None:
            self._logger.error(event, extra=kwargs, exc_info=exc, stacklevel=2)
        else:
            self._log(logging.ERROR, event, **kwargs)

    def bind(self, **context: Any) -> BoundLogger:
        """Create a child logger with bound fields."""
        return BoundLogger(self, context)

class BoundLogger:
    """Logger with pre-bound fields."""

    __slots__ = ("_context", "_parent")

    def __init__(self, parent: StructuredLogger, context: dict[str, Any]):
        self._parent = parent
        self._context = context

    def debug(self, event: str, **kwargs: Any) -> None:
        self._parent.debug(event, **{**self._context, **kwargs})

    def info(self, event: str, **kwargs: Any) -> None:
        self._parent.info(event, **{**self._context, **kwargs})

    def warning(self, event: str, **kwargs: Any) -> None:
        self._parent.warning(event, **{**self._context, **kwargs})

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._parent.error(event, exc=exc, **{**self._context, **kwargs})

# ── Setup ──────────────────────────────────────────────────────────

_initialized = False

def setup_logging(*, level: str = "INFO", json_output: bool = False) -> None:
    """
    Install the structured formatter on the ``echo_runtime`` logger.

    Safe to call more than once; only the first call configures handlers.
    Host applications that manage logging themselves can skip this entirely.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    pkg_logger = logging.getLogger("echo_runtime")
    pkg_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter(json_output=json_output))
    pkg_logger.addHandler(handler)
    pkg_logger.propagate = False

def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
