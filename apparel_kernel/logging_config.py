"""
JSON-lines logging for the apparel ledger.

Every logger lives under the ``apparel_kernel`` namespace.  Records are
rendered as one JSON object each: timestamp, level, logger, message, the
fields bound in ``LogContext`` and whatever the call site put in ``extra=``.
Exceptions carrying a ``code`` (the ``ApparelLedgerError`` family) also
contribute their structured attributes as ``exc_<name>`` keys.
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
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

NAMESPACE = "apparel_kernel"

CONTEXT_FIELDS = frozenset({
    "correlation_id",
    "scope_id",
    "actor_id",
    "period_id",
    "entry_id",
    "order_id",
})

_bound: ContextVar[dict[str, str]] = ContextVar("apparel_log_context", default={})


class LogContext:
    """
    Request-scoped fields copied into every record.

    Backed by a single ContextVar holding an immutable snapshot, so worker
    threads and asyncio tasks each see their own bindings.
    """

    @staticmethod
    def _merged(fields: dict[str, Any]) -> dict[str, str]:
        unknown = set(fields) - CONTEXT_FIELDS
        if unknown:
            raise KeyError(f"Unknown log context field(s): {', '.join(sorted(unknown))}")
        current = dict(_bound.get())
        current.update({k: str(v) for k, v in fields.items() if v is not None})
        return current

    @classmethod
    def set(cls, **fields: Any) -> None:
        _bound.set(cls._merged(fields))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_bound.get())

    @classmethod
    def clear(cls) -> None:
        _bound.set({})

    @classmethod
    def bind(cls, **fields: Any) -> "_Binding":
        """``with LogContext.bind(order_id=...):`` restores the outer fields on exit."""
        return _Binding(cls._merged(fields))


class _Binding:
    def __init__(self, snapshot: dict[str, str]):
        self._snapshot = snapshot
        self._token = None

    def __enter__(self) -> type[LogContext]:
        self._token = _bound.set(self._snapshot)
        return LogContext

    def __exit__(self, *exc_info: Any) -> None:
        _bound.reset(self._token)


# Attributes every LogRecord has; anything else came in through extra=.
_RESERVED = frozenset(
    logging.LogRecord("baseline", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": exc.__class__.__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    fields.update(
        (f"exc_{name}", value)
        for name, value in exc.__dict__.items()
        if not name.startswith("_")
    )
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for name, value in record.__dict__.items():
            if name not in _RESERVED:
                out.setdefault(name, value)

        if record.exc_info and record.exc_info[1] is not None:
            out.update(_exception_fields(record.exc_info[1]))
            out["traceback"] = self.formatException(record.exc_info)

        return json.dumps(out, default=_jsonable)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{NAMESPACE}.{name}")


_setup_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Install the JSON handler on the namespace logger.

    Only the first call has an effect; later calls return immediately so
    that engine initialisation can call this unconditionally.
    """
    global _installed_handler
    with _setup_lock:
        if _installed_handler is not None:
            return
        target = handler or logging.StreamHandler(stream or sys.stderr)
        target.setFormatter(StructuredFormatter())

        namespace_logger = logging.getLogger(NAMESPACE)
        namespace_logger.setLevel(level)
        namespace_logger.propagate = False
        namespace_logger.addHandler(target)
        _installed_handler = target


def reset_logging() -> None:
    """Drop every handler and allow ``configure_logging`` again (tests)."""
    global _installed_handler
    with _setup_lock:
        _installed_handler = None
        namespace_logger = logging.getLogger(NAMESPACE)
        for existing in list(namespace_logger.handlers):
            namespace_logger.removeHandler(existing)
        namespace_logger.setLevel(logging.WARNING)
