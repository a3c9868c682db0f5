"""
RELAYWATCH Observability

Structured logging for the probe engine. Every component receives a
RelayLogger handle through its constructor; the handle tags each record
with the component layer and the correlation id of the probe in flight,
so one probe can be followed from submission to attribution.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Component Code                       │
    │   logger.info("msg", sequence=n)   logger.operation()   │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                     RelayLogger                         │
    │    layer tagging, correlation ids, keyword context      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      Handlers                           │
    │         StructuredHandler (json) │ TextHandler          │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import functools
import json
import logging
import sys
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

# Probe-scoped correlation id
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

ROOT_LOGGER_NAME = "relaywatch"


class RelayLayer(Enum):
    """Engine components, used to categorise log records."""
    SUBMIT = "submit"
    SEQUENCE = "sequence"
    TRACKER = "tracker"
    IDENTITY = "identity"
    METRICS = "metrics"
    STORE = "store"
    CLIENT = "client"
    SESSION = "session"
    HEALTH = "health"
    CONFIG = "config"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogEvent":
        event = cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=correlation_id_var.get(),
            layer=getattr(record, "layer", ""),
            operation=getattr(record, "operation", ""),
            duration_ms=getattr(record, "duration_ms", None),
            error_code=getattr(record, "error_code", ""),
            context=getattr(record, "context", {}) or {},
        )
        if record.exc_info:
            event.exception = "".join(traceback.format_exception(*record.exc_info))
        return event


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(LogEvent.from_record(record).to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.Handler):
    """Human-readable handler: `time level [layer] message key=value ...`."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent.from_record(record)
            parts = [event.timestamp, event.level.upper().ljust(7)]
            if event.layer:
                parts.append(f"[{event.layer}]")
            parts.append(event.message)
            for key, value in event.context.items():
                parts.append(f"{key}={value}")
            if event.duration_ms is not None:
                parts.append(f"duration_ms={event.duration_ms:.1f}")
            line = " ".join(parts)
            if event.exception:
                line += "\n" + event.exception
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class RelayLogger:
    """
    Structured logger handle for one engine component.

    Records go to the stdlib logger `relaywatch.<layer>.<name>`; handlers
    are attached once on the `relaywatch` root by configure_logging().
    """

    def __init__(self, name: str, layer: RelayLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

    @property
    def stdlib(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"probe-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: RelayLayer) -> RelayLogger:
    """Get a logger handle for an engine component."""
    return RelayLogger(name, layer)


def configure_logging(
    level: str = "info",
    fmt: str = "json",
    stream: Any = None,
) -> logging.Handler:
    """
    Attach a single handler to the `relaywatch` root logger.

    Replaces any handler previously installed by this function so repeated
    calls (tests, reloads) do not duplicate output.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        if isinstance(handler, (StructuredHandler, TextHandler)):
            root.removeHandler(handler)

    handler: logging.Handler
    if fmt == "text":
        handler = TextHandler(stream)
    else:
        handler = StructuredHandler(stream)
    root.addHandler(handler)
    root.propagate = False
    return handler


T = TypeVar("T")


def timed_operation(
    logger: RelayLogger,
    operation_name: str,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator timing a coroutine function and logging its completion."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return await func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator
