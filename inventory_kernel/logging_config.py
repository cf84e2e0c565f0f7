"""
Logging for the inventory integrity core.

Every module logs through ``get_logger(name)``, which places it under the
``inventory_kernel`` hierarchy.  ``configure_logging`` attaches one handler
to that hierarchy: JSON lines by default, or plain ``key=value`` text for
interactive runs (``log_json: false``).

Request-scoped fields (the acting user, the backup being worked on) travel
in ``LogContext`` and are stamped onto every record emitted while bound.
"""

__all__ = [
    "StructuredFormatter",
    "PlainFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """Thread-safe / async-safe holder for the actor and backup being logged about."""

    _vars: dict[str, ContextVar[str | None]] = {
        "actor_id": ContextVar("log_actor_id", default=None),
        "backup_id": ContextVar("log_backup_id", default=None),
    }

    @classmethod
    def set(cls, *, actor_id: str | None = None, backup_id: str | None = None) -> None:
        """Set context fields. Only non-None values are updated."""
        for name, val in (("actor_id", actor_id), ("backup_id", backup_id)):
            if val is not None:
                cls._vars[name].set(str(val))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        """Return all non-None context fields as a dict."""
        return {name: var.get() for name, var in cls._vars.items() if var.get() is not None}

    @classmethod
    def clear(cls) -> None:
        for var in cls._vars.values():
            var.set(None)

    @classmethod
    def bind(cls, **kwargs: Any) -> "_LogContextManager":
        """Context manager that sets fields on entry and restores on exit."""
        unknown = set(kwargs) - set(cls._vars)
        if unknown:
            raise TypeError(f"Unknown log context fields: {sorted(unknown)}")
        return _LogContextManager(kwargs)


class _LogContextManager:
    def __init__(self, fields: dict[str, Any]):
        self._fields = fields
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> "type[LogContext]":
        for key, val in self._fields.items():
            if val is not None:
                self._tokens[key] = LogContext._vars[key].set(str(val))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        for key, token in self._tokens.items():
            LogContext._vars[key].reset(token)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Path)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return f"<{len(obj)} bytes>"
    return str(obj)


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields, then ``extra`` fields, then exception details."""
    fields: dict[str, Any] = dict(LogContext.get_all())

    for key, val in vars(record).items():
        if key not in _STDLIB_KEYS and key not in fields:
            fields[key] = val

    if record.exc_info and record.exc_info[1] is not None:
        exc = record.exc_info[1]
        fields["exc_type"] = type(exc).__name__
        fields["exc_message"] = str(exc)
        if hasattr(exc, "code"):
            fields["exc_code"] = exc.code
        # Structured fields carried by InventoryKernelError subclasses
        for k, v in vars(exc).items():
            if not k.startswith("_") and k not in ("args", "code"):
                fields[f"exc_{k}"] = v
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.exc_info and record.exc_info[1] is not None:
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


class PlainFormatter(logging.Formatter):
    """``<ts> <LEVEL> <logger> <message> key=value ...`` for humans at a terminal."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        parts = [ts, record.levelname, record.name, record.getMessage()]
        parts.extend(
            f"{key}={json.dumps(val, default=_json_default)}"
            for key, val in _record_fields(record).items()
        )
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "inventory_kernel"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the inventory_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    json_output: bool = True,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Configure the inventory_kernel logger hierarchy (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter() if json_output else PlainFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Reset logging configuration. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
