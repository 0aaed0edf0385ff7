"""Cooperative cancellation tokens for in-flight chat requests."""

import asyncio
from typing import Awaitable, Callable, List, TypeVar

from .errors import RequestCancelled


T = TypeVar("T")


class CancellationToken:
    """
    One-shot cancellation flag with callbacks.

    Callbacks registered after cancellation run immediately.
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelled()


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """
    Await ``awaitable`` as a task that ``token`` can abort.

    Raises RequestCancelled if the token fires before or during the await,
    including when a result arrives after cancellation was requested.
    """
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestCancelled()
    task = asyncio.ensure_future(awaitable)
    token.add_callback(task.cancel)
    try:
        result = await task
    except asyncio.CancelledError:
        if token.cancelled:
            raise RequestCancelled() from None
        raise
    finally:
        token.remove_callback(task.cancel)
    token.raise_if_cancelled()
    return result
