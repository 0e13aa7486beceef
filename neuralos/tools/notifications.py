"""
Built-in notification actions.

``send_notification``, ``schedule_notification`` and ``cancel_notifications``
delegate to a ``Notifier``. ``LogNotifier`` is the default notifier for
headless use: it logs notifications and fires scheduled ones from asyncio
timers.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set

import structlog

from .base import Action, ActionDefinition, ActionParameter, ActionResult

logger = structlog.get_logger(__name__)

DEFAULT_DELAY_SECONDS = 10

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_delay_seconds(value: Optional[str]) -> int:
    """``"30"`` -> 30, ``"5m"`` -> 300, ``"2h"`` -> 7200; unusable values -> 10."""
    match = _LEADING_INT.match(value or "")
    if not match:
        return DEFAULT_DELAY_SECONDS
    number = int(match.group(1))
    if number <= 0:
        return DEFAULT_DELAY_SECONDS
    lower = (value or "").lower()
    if "m" in lower:
        return number * 60
    if "h" in lower:
        return number * 3600
    return number


class Notifier(ABC):
    @abstractmethod
    async def show(self, title: str, body: str) -> None:
        """Display a notification now."""

    @abstractmethod
    async def schedule(self, title: str, body: str, delay_seconds: int) -> None:
        """Display a notification after ``delay_seconds``."""

    @abstractmethod
    async def cancel_all(self) -> None:
        """Drop every pending scheduled notification."""


class LogNotifier(Notifier):
    def __init__(self, on_fire: Optional[Callable[[str, str], None]] = None):
        self._on_fire = on_fire
        self._pending: Set[asyncio.Task] = set()
        self.shown: List[Dict[str, str]] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def show(self, title: str, body: str) -> None:
        self.shown.append({"title": title, "body": body})
        logger.info("Notification shown", title=title)
        if self._on_fire:
            self._on_fire(title, body)

    async def schedule(self, title: str, body: str, delay_seconds: int) -> None:
        async def _fire() -> None:
            await asyncio.sleep(delay_seconds)
            await self.show(title, body)

        task = asyncio.create_task(_fire())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        logger.info("Notification scheduled", title=title, delay_seconds=delay_seconds)

    async def cancel_all(self) -> None:
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        logger.info("Notifications cancelled", count=len(tasks))


class SendNotificationAction(Action):
    def __init__(self, notifier: Notifier):
        self._notifier = notifier

    @property
    def definition(self) -> ActionDefinition:
        return ActionDefinition(
            name="send_notification",
            description="shows a notification immediately",
            parameters=[
                ActionParameter("title", "Notification title", default="NeuralOS"),
                ActionParameter("body", "Notification text", default="Reminder"),
            ],
        )

    async def execute(self, params: Dict[str, str]) -> ActionResult:
        title = params.get("title") or "NeuralOS"
        body = params.get("body") or params.get("message") or "Reminder"
        await self._notifier.show(title, body)
        return ActionResult.ok(f"Notification sent: {title}")


class ScheduleNotificationAction(Action):
    def __init__(self, notifier: Notifier):
        self._notifier = notifier

    @property
    def definition(self) -> ActionDefinition:
        return ActionDefinition(
            name="schedule_notification",
            description="schedules a notification after N seconds",
            parameters=[
                ActionParameter("title", "Notification title", default="NeuralOS Reminder"),
                ActionParameter("body", "Notification text"),
                ActionParameter("delay", "Delay in seconds", default=str(DEFAULT_DELAY_SECONDS)),
            ],
        )

    async def execute(self, params: Dict[str, str]) -> ActionResult:
        title = params.get("title") or "NeuralOS Reminder"
        body = params.get("body") or params.get("message") or "Here's your reminder!"
        delay = parse_delay_seconds(params.get("delay") or params.get("seconds") or str(DEFAULT_DELAY_SECONDS))
        await self._notifier.schedule(title, body, delay)
        return ActionResult.ok(f"Reminder set for {delay}s from now")


class CancelNotificationsAction(Action):
    def __init__(self, notifier: Notifier):
        self._notifier = notifier

    @property
    def definition(self) -> ActionDefinition:
        return ActionDefinition(name="cancel_notifications", description="cancels all pending notifications")

    async def execute(self, params: Dict[str, str]) -> ActionResult:
        await self._notifier.cancel_all()
        return ActionResult.ok("All notifications cancelled")


def notification_actions(notifier: Notifier) -> List[Action]:
    return [
        SendNotificationAction(notifier),
        ScheduleNotificationAction(notifier),
        CancelNotificationsAction(notifier),
    ]


__all__ = [
    "CancelNotificationsAction",
    "LogNotifier",
    "Notifier",
    "ScheduleNotificationAction",
    "SendNotificationAction",
    "notification_actions",
    "parse_delay_seconds",
]
