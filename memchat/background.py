"""Fire-and-forget background work (embedding writes, summarization).

Tasks are kept in a module-level set so they are not garbage collected
mid-flight; failures end up in the log, never in a caller.
"""

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background task %s failed: %s", task.get_name(), exc)


def spawn(coro: Coroutine[Any, Any, Any], name: str = "") -> asyncio.Task | None:
    """Schedule *coro* on the running loop without awaiting it."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("Could not schedule %s (no running event loop)", name or coro)
        coro.close()
        return None
    task = loop.create_task(coro, name=name or None)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending() -> int:
    return len(_tasks)


async def drain(timeout: float | None = None) -> None:
    """Wait for every task spawned so far (shutdown and tests)."""
    while True:
        running = [t for t in _tasks if not t.done()]
        if not running:
            return
        await asyncio.wait(running, timeout=timeout)
        if timeout is not None:
            return


async def cancel_all() -> None:
    tasks = list(_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
