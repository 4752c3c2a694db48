"""
apparel_engines.tracer -- ENGINE_TRACE records for pure engine calls.

``@traced_engine`` logs one record per call of a costing, explosion or
variance function: which engine ran, at which version, a short digest of
the inputs that determine its result and how long it took.  Two calls with
numerically equal inputs (``Decimal("100")`` and ``Decimal("100.00")``)
produce the same digest, so a replayed calculation can be matched to the
original one in the logs.

The decorator never touches arguments or results.
"""

from __future__ import annotations

import functools
import hashlib
import json
from collections.abc import Callable, Mapping
from decimal import Decimal
from enum import Enum
from time import perf_counter
from typing import Any

from apparel_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")


def _normalized(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, Enum):
        return _normalized(value.value)
    if isinstance(value, Mapping):
        return {str(k): _normalized(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalized(v) for v in value]
    if value is None or isinstance(value, (bool, int, str)):
        return value
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """First 16 hex chars of SHA-256 over the named keyword inputs."""
    selected = {name: _normalized(kwargs.get(name)) for name in fingerprint_fields}
    canonical = json.dumps(selected, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = perf_counter()
            result = func(*args, **kwargs)
            _logger.info(
                "ENGINE_TRACE",
                extra={
                    "trace_type": "ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "function": func.__qualname__,
                    "input_fingerprint": (
                        compute_input_fingerprint(fingerprint_fields, kwargs)
                        if fingerprint_fields else ""
                    ),
                    "duration_ms": round((perf_counter() - started) * 1000, 2),
                },
            )
            return result

        return wrapper

    return decorator
