from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

from ..store import StoreError
from ..telemetry.events import timed_call

T = TypeVar("T")

_logger = logging.getLogger("coach_pipeline.bounded")


async def run_bounded(
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
    label: str,
    slow_after: float = 3.0,
    logger: Optional[logging.Logger] = None,
    **kwargs: Any,
) -> T:
    """Run a blocking call in a worker thread, bounded by `timeout` seconds.

    Raises asyncio.TimeoutError when the budget is exhausted; the worker
    thread is left to finish on its own. Calls slower than `slow_after` are
    logged as anomalies.
    """
    with timed_call(logger or _logger, label, slow_after=slow_after):
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)


async def call_store(config, fn: Callable[..., T], *args: Any, label: str, logger=None, **kwargs: Any) -> T:
    """run_bounded with the store timeout; a timeout surfaces as StoreError."""
    try:
        return await run_bounded(
            fn,
            *args,
            timeout=config.store_timeout_seconds,
            label=label,
            slow_after=config.slow_call_seconds,
            logger=logger,
            **kwargs,
        )
    except asyncio.TimeoutError as e:
        raise StoreError(f"{label}: store call timed out after {config.store_timeout_seconds}s") from e


__all__ = ["run_bounded", "call_store"]
