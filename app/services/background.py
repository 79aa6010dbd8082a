"""Reachline — Detached Background Tasks.

Fire-and-forget work (audit inserts, thumbnail warming, prewarm sub-tasks
that outlive their timeout) runs here. Failures are logged, never raised to
whoever spawned the task.
"""

import asyncio
from typing import Any, Awaitable, Optional, Set, TypeVar

from app.core.logging import get_logger

logger = get_logger("background")

T = TypeVar("T")

# Strong references; the loop only keeps weak ones
_detached: Set["asyncio.Task[Any]"] = set()


def _on_done(task: "asyncio.Task[Any]") -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Background task {task.get_name()} failed: {exc!r}")


def spawn_detached(coro: Awaitable[T], name: str = "detached") -> "asyncio.Task[T]":
    task = asyncio.ensure_future(coro)
    task.set_name(name)
    _detached.add(task)
    task.add_done_callback(_on_done)
    return task


async def run_with_timeout(coro: Awaitable[T], timeout_s: float, name: str = "subtask") -> Optional[T]:
    """Wait up to `timeout_s` for the result.

    On timeout returns None and leaves the task running detached. Exceptions
    from a task that finished in time propagate to the caller.
    """
    task = spawn_detached(coro, name)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout_s)
    except asyncio.TimeoutError:
        logger.info(f"{name} still running after {timeout_s:.3f}s; continuing in background")
        return None


async def drain(timeout_s: float = 5.0) -> None:
    """Wait for detached tasks; used on shutdown and in tests."""
    if not _detached:
        return
    await asyncio.wait(list(_detached), timeout=timeout_s)
