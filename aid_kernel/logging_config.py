"""
Structured logging for the aid kernel.

Every kernel logger lives under ``aid_kernel`` and emits one JSON object
per line.  Messages are event names (``contribution_committed``,
``allocation_created``); the facts travel as ``extra=`` fields.

Operation-scoped fields (acting participant, operation, request, batch
run) are held in contextvars by ``LogContext`` and stamped on every line
logged while they are bound, including lines from nested services.
"""

__all__ = [
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

_ROOT = "aid_kernel"

_CONTEXT_FIELDS = ("correlation_id", "actor_id", "operation", "request_id", "batch_run_id")

_context: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"aid_log_{name}", default=None) for name in _CONTEXT_FIELDS
}


class LogContext:
    """Operation-scoped log fields.  Safe across threads and tasks."""

    @staticmethod
    def _var(name: str) -> ContextVar[str | None]:
        try:
            return _context[name]
        except KeyError:
            raise ValueError(f"Unknown log context field: {name}") from None

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Set fields for the rest of the current context.  None leaves a field as is."""
        for name, value in fields.items():
            if value is not None:
                cls._var(name).set(value)

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {
            name: var.get() for name, var in _context.items() if var.get() is not None
        }

    @classmethod
    def clear(cls) -> None:
        for var in _context.values():
            var.set(None)

    @classmethod
    def bind(cls, **fields: str | None) -> "_Binding":
        """``with LogContext.bind(operation="allocate"):`` -- restored on exit."""
        return _Binding(fields)


class _Binding:
    def __init__(self, fields: dict[str, str | None]):
        self._fields = fields
        self._tokens: list[Token] = []

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            if value is not None:
                self._tokens.append(LogContext._var(name).set(value))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        while self._tokens:
            token = self._tokens.pop()
            token.var.reset(token)


# Attributes every LogRecord has; anything else on a record came from extra=.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # Kernel errors carry their facts as attributes (remaining, available, ...)
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: core fields, bound context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in payload
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """``get_logger("services.ledger")`` -> ``aid_kernel.services.ledger``."""
    return logging.getLogger(f"{_ROOT}.{name}")


_configured = False
_configure_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
    json_output: bool = True,
) -> None:
    """
    Attach one handler to the ``aid_kernel`` logger.  Later calls are no-ops
    until ``reset_logging``.

    With ``json_output=False`` records are written as plain text, for a
    developer terminal.
    """
    global _configured
    with _configure_lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(_ROOT)
    root.setLevel(level)
    root.propagate = False

    target = handler or logging.StreamHandler(stream or sys.stderr)
    if json_output:
        target.setFormatter(StructuredFormatter())
    else:
        target.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(target)


def reset_logging() -> None:
    """Drop the configured handler.  Test helper."""
    global _configured
    with _configure_lock:
        _configured = False
    root = logging.getLogger(_ROOT)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
