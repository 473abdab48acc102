"""Background task runner.

Tasks run as asyncio tasks on the current event loop.  The API is the same
everywhere — call ``worker.submit(coro_fn, *args)``.  Fire-and-forget:
exceptions are logged, never raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage-collected mid-flight.
_pending: set[asyncio.Task] = set()


def submit(fn: Callable[..., Awaitable], *args, **kwargs) -> asyncio.Task:
    """Schedule ``fn(*args, **kwargs)`` in the background."""
    async def _safe():
        try:
            await fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"Background task error: {e}")

    task = asyncio.get_running_loop().create_task(_safe())
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain(timeout: float | None = None) -> None:
    """Wait for all pending background tasks (used at shutdown and in tests)."""
    if not _pending:
        return
    done, not_done = await asyncio.wait(set(_pending), timeout=timeout)
    if not_done:
        logger.warning(f"{len(not_done)} background tasks still running after drain")
