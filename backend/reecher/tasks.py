"""
Background task helpers.
"""
import asyncio
import logging
from typing import Coroutine, Optional, Set

import sentry_sdk

logger = logging.getLogger(__name__)

# Strong references so fire-and-forget tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def safe_create_task(coro: Coroutine, *, name: Optional[str] = None) -> asyncio.Task:
    """Create an asyncio task with automatic exception logging (prevents silent failures)."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def _log_exception(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc:
            logger.error("Background task %s failed: %s", name or t.get_name(), exc)
            if sentry_sdk.is_initialized():
                sentry_sdk.capture_exception(exc)

    task.add_done_callback(_log_exception)
    return task


async def cancel_background_tasks() -> None:
    """Cancel whatever is still running (app shutdown)."""
    tasks = list(_background_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
