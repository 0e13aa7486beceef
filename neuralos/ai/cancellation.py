"""
Cooperative cancellation.

A ``CancellationToken`` is created per request by whoever owns the turn and
handed down to the completion client. Signaling is idempotent; observers
either poll ``cancelled`` or await ``wait()``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class RequestCancelled(Exception):
    """Raised internally when a cancellation token wins a race."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The losing side is cancelled. Raises ``RequestCancelled`` when the
        token wins.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RequestCancelled(self.reason)

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if work.done():
            waiter.cancel()
            return work.result()

        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise RequestCancelled(self.reason)


__all__ = ["CancellationToken", "RequestCancelled"]
