from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        if reraise:
            raise
        return default


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> bool:
    """Sleep up to ``timeout_seconds``; returns True when the stop event fired first."""
    if timeout_seconds <= 0:
        return stop_event.is_set()

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
        return True
    except asyncio.TimeoutError:
        return False


def spawn_tracked(
    coro: Awaitable[Any],
    *,
    registry: set[asyncio.Task[Any]],
    logger: logging.Logger,
    event: str,
    name: str | None = None,
) -> asyncio.Task[Any]:
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    registry.add(task)

    def on_done(done_task: asyncio.Task[Any]) -> None:
        registry.discard(done_task)
        if done_task.cancelled():
            return
        error = done_task.exception()
        if error is not None:
            log_event(
                logger,
                level="error",
                event=event,
                message="Background task failed",
                task=done_task.get_name(),
                error=str(error),
            )

    task.add_done_callback(on_done)
    return task
