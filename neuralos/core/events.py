"""
Multi-subscriber event channels.

Sessions expose one ``EventBus`` per event kind (partial transcript, final
transcript, error, state change, ...). Any number of listeners can subscribe;
each subscription returns a handle that removes exactly that listener.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Generic, List, Set, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Any]


class Subscription:
    """Handle returned by ``EventBus.subscribe``; unsubscribing twice is harmless."""

    def __init__(self, bus: "EventBus[Any]", listener: Callable[[Any], Any]):
        self._bus = bus
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self._listener)


class EventBus(Generic[T]):
    """Ordered fan-out of events to subscribed listeners.

    Listeners run synchronously in subscription order. A listener returning
    an awaitable has it scheduled as a task on the running loop. A failing
    listener is logged and never prevents delivery to the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], Any]] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, listener: Callable[[T], Any]) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self, listener)

    def publish(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception:
                logger.exception("Event listener failed", bus=self.name)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)

    def clear(self) -> None:
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def drain(self) -> None:
        """Wait for async listeners scheduled so far (used on teardown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _remove(self, listener: Callable[[T], Any]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _schedule(self, awaitable: Any) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Async event listener failed", bus=self.name)

        task = asyncio.ensure_future(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


__all__ = ["EventBus", "Subscription"]
