"""
fintel_engines.tracer -- Engine invocation tracer emitting FINTEL_ENGINE_TRACE.

Responsibility:
    Provide a lightweight decorator (``@traced_engine``) that wraps pure
    engine invocations with structured trace logging.  The trace captures
    engine_name, engine_version, input_fingerprint (deterministic SHA-256
    hash of selected inputs), and duration_ms, so a prediction or forecast
    shown to a user can be tied back to the exact inputs that produced it.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Does NOT introduce I/O into engines; emits a log record only.

Invariants enforced:
    - Fingerprints are deterministic: dict keys are sorted, dataclasses are
      canonicalized field by field, Decimals keep their exact string form.
    - The decorator does not mutate inputs or results.

Failure modes:
    - Fingerprint fields naming parameters that were not supplied are
      recorded as "null".

Usage:
    from fintel_engines.tracer import traced_engine

    @traced_engine("payment_predictor", "1.0", fingerprint_fields=("invoice",))
    def predict(self, invoice, stats, ...):
        ...
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import inspect
import logging
import time
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

_logger = logging.getLogger("fintel.engines.tracer")


def _canonicalize(value: Any) -> str:
    """Produce a stable string representation of a value for fingerprinting."""
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal, UUID)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple, frozenset, set)):
        seq = sorted(value, key=_canonicalize) if isinstance(value, (set, frozenset)) else value
        return "[" + ",".join(_canonicalize(v) for v in seq) + "]"
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        fields = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        return type(value).__name__ + _canonicalize(fields)
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: dict[str, Any],
) -> str:
    """Compute a 16-hex-char SHA-256 fingerprint of selected input fields."""
    parts: list[str] = []
    for field in fingerprint_fields:
        val = arguments.get(field)
        parts.append(f"{field}={_canonicalize(val)}")
    canonical = "|".join(parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator that emits FINTEL_ENGINE_TRACE for pure engine invocations.

    Args:
        engine_name: Engine identifier (e.g., "revenue_forecaster").
        engine_version: Engine version (e.g., "1.0").
        fingerprint_fields: Parameter names (positional or keyword) to
            include in the input fingerprint hash.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = ""
            if fingerprint_fields:
                bound = signature.bind_partial(*args, **kwargs)
                fp = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.info(
                "FINTEL_ENGINE_TRACE",
                extra={
                    "trace_type": "FINTEL_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
