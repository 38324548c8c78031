"""
ledger_engines.tracer -- Engine invocation tracer emitting ENGINE_TRACE.

Provides ``@traced_engine``, which wraps a pure engine call with one
structured log record: engine name and version, a fingerprint of selected
keyword inputs, and the duration.  The decorator reads kwargs and logs; it
never alters inputs or results.

Usage:
    @traced_engine("discrepancy_detector", "1.0", fingerprint_fields=("account_id",))
    def detect(*, account_id, entries, checkpoints): ...
"""

from __future__ import annotations

import functools
import hashlib
import json
import time
from collections.abc import Callable
from typing import Any

from ledger_kernel.domain.amounts import to_json_safe
from ledger_kernel.logging_config import get_logger

logger = get_logger("engines.tracer")


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """16-hex-char SHA-256 prefix over the selected kwargs (missing -> null)."""
    selected = {name: kwargs.get(name) for name in fingerprint_fields}
    canonical = json.dumps(to_json_safe(selected), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = compute_input_fingerprint(fingerprint_fields, kwargs) if fingerprint_fields else ""
            t0 = time.monotonic()
            result = func(*args, **kwargs)
            logger.debug(
                "ENGINE_TRACE",
                extra={
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
