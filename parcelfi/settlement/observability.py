"""
PARCELFI Observability

Structured logging and correlation for the settlement engine. Every log
line is a JSON object carrying the correlation id of the engine operation
that produced it, so a single fund or repay can be followed across the
custody, verification and ledger layers.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Engine Components                     │
    │  logger.warning("msg", loan_id=x, error_code="...")      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                     LendingLogger                        │
    │  correlation id, layer, operation, duration, context     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                   StructuredHandler                      │
    │  one JSON object per line on stderr (or a given stream)  │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import functools
import inspect
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

# Context variables for request-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)
operation_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "operation", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LendingLayer(Enum):
    """Engine layers for log categorization."""
    ENGINE = "engine"
    LOANS = "loans"
    CUSTODY = "custody"
    VERIFIER = "verifier"
    REPUTATION = "reputation"
    LEDGER = "ledger"
    STORE = "store"
    RECONCILIATION = "reconciliation"
    CONFIG = "config"
    CLI = "cli"


class ErrorCode:
    """Error codes attached to WARNING and above."""
    UNVERIFIED_AMOUNT = "UNVERIFIED_AMOUNT"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    SETTLEMENT_PENDING = "SETTLEMENT_PENDING"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    PAYMENT_REUSED = "PAYMENT_REUSED"
    CUSTODY_FAILED = "CUSTODY_FAILED"
    CUSTODY_PREVIOUSLY_APPLIED = "CUSTODY_PREVIOUSLY_APPLIED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"
    LEDGER_MIRROR_FAILED = "LEDGER_MIRROR_FAILED"
    EXTERNAL_SUCCESS_LOCAL_INCONSISTENCY = "EXTERNAL_SUCCESS_LOCAL_INCONSISTENCY"


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


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None, text_mode: bool = False):
        super().__init__()
        self.stream = stream
        self.text_mode = text_mode

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=getattr(record, "correlation_id", "") or correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            if self.text_mode:
                line = f"{event.timestamp} {event.level.upper()} {event.logger} {event.message}"
                if event.error_code:
                    line += f" [{event.error_code}]"
                if event.context:
                    line += " " + json.dumps(event.context, default=str)
            else:
                line = event.to_json()
            stream = self.stream or sys.stderr
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class LendingLogger:
    """
    Structured logger for settlement engine components.

    Automatically includes the correlation id, current operation and
    layer in every log event. Extra keyword arguments become the event's
    context.
    """

    def __init__(
        self,
        name: str,
        layer: LendingLayer,
        level: LogLevel = LogLevel.INFO,
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"parcelfi.{layer.value}.{name}")
        self._logger.setLevel(getattr(logging, level.value.upper()))

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())

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
            "operation": operation or operation_var.get(),
            "error_code": error_code,
            "duration_ms": duration_ms,
            "correlation_id": correlation_id_var.get(),
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._log(logging.WARNING, message, error_code=error_code, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def critical(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.CRITICAL, message, error_code=error_code, exc_info=exc_info, **context)

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
            duration_ms=round(duration_ms, 2),
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


@contextmanager
def operation_context(operation: str, correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind an operation name and correlation id for the enclosed block."""
    cid = correlation_id or correlation_id_var.get() or generate_correlation_id()
    cid_token = correlation_id_var.set(cid)
    op_token = operation_var.set(operation)
    try:
        yield cid
    finally:
        operation_var.reset(op_token)
        correlation_id_var.reset(cid_token)


def configure_logging(level: str = "info", log_format: str = "json") -> None:
    """Apply level and output format to every existing `parcelfi.*` logger."""
    for name in list(logging.root.manager.loggerDict):
        if not name.startswith("parcelfi."):
            continue
        lg = logging.getLogger(name)
        lg.setLevel(getattr(logging, level.upper()))
        for handler in lg.handlers:
            if isinstance(handler, StructuredHandler):
                handler.text_mode = log_format == "text"


def get_logger(name: str, layer: LendingLayer) -> LendingLogger:
    """Get a logger for an engine component."""
    return LendingLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: LendingLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations (sync or async)."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.monotonic()
                success = True
                try:
                    return await func(*args, **kwargs)
                except Exception:
                    success = False
                    raise
                finally:
                    logger.operation(operation_name, (time.monotonic() - start) * 1000, success)
            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                logger.operation(operation_name, (time.monotonic() - start) * 1000, success)
        return wrapper
    return decorator
