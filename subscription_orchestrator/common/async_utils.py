from __future__ import annotations

import asyncio
import contextlib
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


def _discard_outcome(task: asyncio.Future[Any]) -> None:
    # a late loser must not surface as "exception was never retrieved"
    with contextlib.suppress(asyncio.CancelledError, Exception):
        task.exception()


async def race_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    on_timeout: Callable[[], BaseException],
) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    First to settle wins. On timeout the exception built by ``on_timeout`` is
    raised and the underlying call is left running; whatever it produces later
    is dropped. Unlike ``asyncio.wait_for`` nothing is cancelled, because a
    broadcast operation keeps going regardless of whether we are listening.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=max(0.0, timeout_seconds))
    except asyncio.CancelledError:
        task.add_done_callback(_discard_outcome)
        raise
    if task in done:
        return task.result()
    task.add_done_callback(_discard_outcome)
    raise on_timeout()
