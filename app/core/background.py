"""Detached background tasks that outlive the request that spawned them."""

import asyncio
import logging
from typing import Any, Coroutine

from app.core.logging import get_logger, log_with_context

logger = get_logger(__name__)

# Strong references; the event loop only keeps weak ones
_background_tasks: set[asyncio.Task] = set()


def spawn_detached(coro: Coroutine[Any, Any, Any], name: str, **context: Any) -> asyncio.Task:
    """
    Schedule a coroutine that is never awaited by the caller.

    The task is held until it finishes. Any exception it raises is logged
    together with the supplied context (conversation_id, generation_id, ...).

    Args:
        coro: Coroutine to run
        name: Task name, used in logs
        **context: Identifiers attached to the failure log line

    Returns:
        The scheduled task (callers may wait on it with a bound, never cancel it)
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            log_with_context(logger, logging.WARNING, f"Background task {name} cancelled", **context)
            return
        exc = t.exception()
        if exc is not None:
            log_with_context(
                logger,
                logging.ERROR,
                f"Background task {name} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
                **context,
            )

    task.add_done_callback(_done)
    return task


def pending_tasks() -> int:
    """Number of detached tasks still running."""
    return len(_background_tasks)


async def drain(timeout: float) -> int:
    """
    Wait up to ``timeout`` seconds for detached tasks to finish.

    Used at shutdown so in-flight message writes are not dropped. Tasks still
    running afterwards are left alone.

    Returns:
        Number of tasks still pending
    """
    if not _background_tasks:
        return 0
    _, pending = await asyncio.wait(set(_background_tasks), timeout=timeout)
    if pending:
        logger.warning(f"{len(pending)} background tasks still running at shutdown")
    return len(pending)
