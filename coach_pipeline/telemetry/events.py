"""
Structured JSON event logging with size caps.

Every fail-open fallback in the pipeline is reported through log_event so
that a degraded decision is still visible in the logs. User-derived text is
always passed through a cap.
"""
from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

# Default caps for fields that may carry user text or raw model output
DEFAULT_CAPS: Dict[str, int] = {
    "message": 200,
    "rawResponse": 500,
    "error": 500,
}


def truncate_for_log(s: Any, cap: int) -> str:
    """Safely truncate a value's string form to at most `cap` characters."""
    try:
        if not isinstance(s, str):
            s = str(s)
        return s if len(s) <= cap else s[:cap]
    except Exception:
        return ""


def log_event(
    logger,
    event_name: str,
    *,
    level: str = "info",
    caps: Optional[Dict[str, int]] = None,
    **fields: Any,
) -> None:
    """Emit a single JSON event line via `logger` at the given level.

    `caps` is merged over DEFAULT_CAPS and applied to the named fields.
    Never raises.
    """
    payload: Dict[str, Any] = {"event": event_name}
    payload.update(fields)

    limits = dict(DEFAULT_CAPS)
    if caps:
        limits.update(caps)
    for key, limit in limits.items():
        if payload.get(key) is not None:
            payload[key] = truncate_for_log(payload[key], int(limit))

    emit = getattr(logger, level, None) or logger.info
    try:
        emit(json.dumps(payload, default=str))
    except Exception:
        try:
            emit(str(payload))
        except Exception:
            pass


@contextmanager
def timed_call(logger, label: str, *, slow_after: float, **fields: Any) -> Iterator[Dict[str, Any]]:
    """Measure a block and log `slow_call` when it runs longer than `slow_after` seconds.

    The yielded dict receives `elapsedMs` once the block exits, so callers can
    attach the latency to their own events.
    """
    info: Dict[str, Any] = {}
    start = time.monotonic()
    try:
        yield info
    finally:
        elapsed = time.monotonic() - start
        info["elapsedMs"] = int(elapsed * 1000)
        if elapsed > slow_after:
            log_event(logger, "slow_call", level="warning", label=label, elapsedMs=info["elapsedMs"], **fields)


__all__ = ["DEFAULT_CAPS", "truncate_for_log", "log_event", "timed_call"]
