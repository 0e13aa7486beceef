"""
Voice capture session.

``SpeechSession`` turns the raw event stream of a platform speech recognizer
into a small state machine::

    idle -> listening -> processing -> idle
                 \\            \\-> error -> (cooldown) -> idle
                  \\-> error

and republishes partial transcripts, the final transcript, classified errors
and state changes on per-kind ``EventBus`` channels. A session owns at most
one native capture at a time.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import structlog
from prometheus_client import Counter, Gauge

from ..config import SpeechConfig
from .events import EventBus
from .speech_errors import NOT_AVAILABLE, PERMISSION_DENIED, UNKNOWN, SpeechError, map_platform_error

logger = structlog.get_logger(__name__)

_CAPTURES_TOTAL = Counter(
    "neuralos_speech_captures_total",
    "Voice captures by outcome",
    labelnames=("outcome",),
)
_SPEECH_ERRORS_TOTAL = Counter(
    "neuralos_speech_errors_total",
    "Classified speech recognition errors",
    labelnames=("code",),
)
_ACTIVE_CAPTURES = Gauge(
    "neuralos_speech_active_captures",
    "Native speech captures currently open",
)


class VoiceState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    ERROR = "error"


_CAPTURING = (VoiceState.LISTENING, VoiceState.PROCESSING)


@dataclass
class VoiceSession:
    state: VoiceState = VoiceState.IDLE
    partial_transcript: str = ""
    final_transcript: Optional[str] = None
    last_error: Optional[SpeechError] = None


# Platform boundary ------------------------------------------------------------


class SpeechEventKind(str, Enum):
    START = "start"
    PARTIAL = "partial"
    END_OF_SPEECH = "end_of_speech"
    FINAL = "final"
    ERROR = "error"
    CANCEL = "cancel"


@dataclass(frozen=True)
class SpeechEvent:
    kind: SpeechEventKind
    text: Optional[str] = None
    code: Optional[str] = None


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNKNOWN = "unknown"


class SpeechPlatform(ABC):
    """
    Contract for an OS speech recognizer.

    Implementations publish ``SpeechEvent`` objects on ``self.events``; the
    command coroutines return once the platform acknowledged the command.
    """

    def __init__(self) -> None:
        self.events: EventBus[SpeechEvent] = EventBus("speech.platform")

    @abstractmethod
    async def check_available(self) -> bool:
        """Whether a recognizer exists on this device."""

    @abstractmethod
    async def permission_status(self) -> PermissionStatus:
        """Current microphone permission."""

    @abstractmethod
    async def request_permission(self) -> PermissionStatus:
        """Prompt for microphone permission and return the outcome."""

    @abstractmethod
    async def start(self, locale: str) -> None:
        """Open a native capture."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop capturing audio; a final result may still follow."""

    @abstractmethod
    async def cancel(self) -> None:
        """Abort the capture without a result."""

    @abstractmethod
    async def destroy(self) -> None:
        """Release native resources."""

    def emit(self, kind: SpeechEventKind, text: Optional[str] = None, code: Optional[str] = None) -> None:
        self.events.publish(SpeechEvent(kind=kind, text=text, code=code))


# Session ----------------------------------------------------------------------


class SpeechSession:
    """Long-lived voice capture session, re-armed by every ``start()``."""

    def __init__(self, platform: SpeechPlatform, config: Optional[SpeechConfig] = None):
        self._platform = platform
        self._config = config or SpeechConfig()
        self._session = VoiceSession()

        self.on_partial: EventBus[str] = EventBus("speech.partial")
        self.on_final: EventBus[str] = EventBus("speech.final")
        self.on_error: EventBus[SpeechError] = EventBus("speech.error")
        self.on_state: EventBus[VoiceState] = EventBus("speech.state")

        self._platform_subscription = platform.events.subscribe(self._handle_platform_event)
        self._command_lock = asyncio.Lock()
        self._grace_task: Optional[asyncio.Task] = None
        self._cooldown_task: Optional[asyncio.Task] = None
        self._capture_open = False
        self._accepting_events = False
        # After a restart, events are ignored until the new capture reports START.
        self._awaiting_start = False
        self._generation = 0
        self._destroyed = False

    # Read-only view -------------------------------------------------------

    @property
    def state(self) -> VoiceState:
        return self._session.state

    @property
    def is_listening(self) -> bool:
        return self._session.state is VoiceState.LISTENING

    @property
    def partial_transcript(self) -> str:
        return self._session.partial_transcript

    @property
    def final_transcript(self) -> Optional[str]:
        return self._session.final_transcript

    @property
    def last_error(self) -> Optional[SpeechError]:
        return self._session.last_error

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def snapshot(self) -> VoiceSession:
        return replace(self._session)

    # Commands -------------------------------------------------------------

    async def check_available(self) -> bool:
        if self._destroyed:
            return False
        try:
            return bool(await self._platform.check_available())
        except Exception as exc:
            logger.warning("Speech availability check failed", error=str(exc))
            return False

    async def start(self, locale: Optional[str] = None) -> None:
        if self._destroyed:
            return
        async with self._command_lock:
            restarted = await self._close_capture()
            self._cancel_timers()

            if not await self._ensure_ready():
                return

            self._generation += 1
            self._session.partial_transcript = ""
            self._session.final_transcript = None
            self._session.last_error = None
            self._set_state(VoiceState.LISTENING)

            self._accepting_events = True
            self._awaiting_start = restarted
            self._mark_capture(True)
            target_locale = locale or self._config.locale
            try:
                await self._platform.start(target_locale)
            except Exception as exc:
                logger.error("Speech platform failed to start", locale=target_locale, error=str(exc))
                self._accepting_events = False
                self._mark_capture(False)
                self._fail(UNKNOWN)
                return
            logger.info("Voice capture started", locale=target_locale, generation=self._generation)

    async def stop(self) -> None:
        """Stop listening and wait for the final result (bounded by the grace period)."""
        if self._stop_has_nothing_to_do():
            return
        async with self._command_lock:
            # A concurrent stop() may have settled or armed the timer meanwhile.
            if self._stop_has_nothing_to_do():
                return
            if self._session.state is VoiceState.LISTENING:
                self._set_state(VoiceState.PROCESSING)
            try:
                await self._platform.stop()
            except Exception as exc:
                logger.warning("Speech platform stop failed", error=str(exc))
            if self._session.state is VoiceState.PROCESSING:
                self._arm_grace_timer()

    def _stop_has_nothing_to_do(self) -> bool:
        if self._destroyed or self._session.state not in _CAPTURING:
            return True
        return self._session.state is VoiceState.PROCESSING and self._grace_task is not None

    async def toggle(self, locale: Optional[str] = None) -> None:
        if self.is_listening:
            await self.stop()
        else:
            await self.start(locale)

    async def cancel(self) -> None:
        if self._destroyed:
            return
        async with self._command_lock:
            self._accepting_events = False
            self._cancel_timers()
            if self._capture_open:
                try:
                    await self._platform.cancel()
                except Exception as exc:
                    logger.warning("Speech platform cancel failed", error=str(exc))
                self._mark_capture(False)
                _CAPTURES_TOTAL.labels("cancelled").inc()
            self._session.partial_transcript = ""
            self._session.last_error = None
            self._set_state(VoiceState.IDLE)

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._accepting_events = False
        self._cancel_timers()
        self._platform_subscription.unsubscribe()
        try:
            await self._platform.destroy()
        except Exception as exc:
            logger.warning("Speech platform destroy failed", error=str(exc))
        self._mark_capture(False)
        self._session = VoiceSession()
        for bus in (self.on_partial, self.on_final, self.on_error, self.on_state):
            bus.clear()
        logger.info("Speech session destroyed")

    # Platform events ------------------------------------------------------

    def _handle_platform_event(self, event: SpeechEvent) -> None:
        if self._destroyed or not self._accepting_events:
            logger.debug("Dropping speech event outside an active capture", kind=event.kind.value)
            return

        state = self._session.state
        kind = event.kind

        if self._awaiting_start:
            if kind is not SpeechEventKind.START:
                logger.debug("Dropping late event from previous capture", kind=kind.value)
                return
            self._awaiting_start = False

        if kind is SpeechEventKind.START:
            logger.debug("Speech platform ready", state=state.value)

        elif kind is SpeechEventKind.PARTIAL:
            text = (event.text or "").strip()
            if text and state in _CAPTURING:
                self._session.partial_transcript = text
                self.on_partial.publish(text)

        elif kind is SpeechEventKind.END_OF_SPEECH:
            if state is VoiceState.LISTENING:
                self._set_state(VoiceState.PROCESSING)

        elif kind is SpeechEventKind.FINAL:
            if state in _CAPTURING:
                self._cancel_grace_timer()
                text = (event.text or "").strip() or self._session.partial_transcript
                self._settle(text, outcome="final" if text else "empty")

        elif kind is SpeechEventKind.ERROR:
            if state in _CAPTURING:
                self._cancel_grace_timer()
                self._accepting_events = False
                self._mark_capture(False)
                self._session.partial_transcript = ""
                self._fail(map_platform_error(event.code))

        elif kind is SpeechEventKind.CANCEL:
            if state in _CAPTURING:
                self._cancel_grace_timer()
                self._accepting_events = False
                self._mark_capture(False)
                self._session.partial_transcript = ""
                self._set_state(VoiceState.IDLE)

    # Internals ------------------------------------------------------------

    async def _ensure_ready(self) -> bool:
        if not await self.check_available():
            self._fail(NOT_AVAILABLE)
            return False

        try:
            status = await self._platform.permission_status()
            if status is PermissionStatus.UNKNOWN:
                status = await self._platform.request_permission()
        except Exception as exc:
            logger.warning("Microphone permission check failed", error=str(exc))
            status = PermissionStatus.DENIED

        if status is not PermissionStatus.GRANTED:
            logger.info("Microphone permission not granted", status=status.value)
            self._fail(PERMISSION_DENIED)
            return False
        return True

    async def _close_capture(self) -> bool:
        """Abort an open capture before a new one starts, discarding its result.

        Returns True when a capture was open.
        """
        if not self._capture_open:
            return False
        self._accepting_events = False
        logger.info("Cancelling previous capture before restart", state=self._session.state.value)
        try:
            await self._platform.cancel()
        except Exception as exc:
            logger.warning("Speech platform cancel failed during restart", error=str(exc))
        self._mark_capture(False)
        _CAPTURES_TOTAL.labels("restarted").inc()
        return True

    def _settle(self, text: str, *, outcome: str) -> None:
        self._accepting_events = False
        self._mark_capture(False)
        self._session.partial_transcript = ""
        if text:
            self._session.final_transcript = text
        self._set_state(VoiceState.IDLE)
        _CAPTURES_TOTAL.labels(outcome).inc()
        if text:
            logger.info("Final transcript", outcome=outcome, chars=len(text))
            self.on_final.publish(text)

    def _fail(self, error: SpeechError) -> None:
        self._session.last_error = error
        self._set_state(VoiceState.ERROR)
        _SPEECH_ERRORS_TOTAL.labels(error.code.value).inc()
        _CAPTURES_TOTAL.labels("error").inc()
        logger.warning("Speech error", code=error.code.value, suggest_typing=error.suggest_typing)
        self.on_error.publish(error)
        self._arm_cooldown_timer()

    def _set_state(self, state: VoiceState) -> None:
        if self._session.state is state:
            return
        self._session.state = state
        if state is VoiceState.IDLE:
            self._session.last_error = None
        self.on_state.publish(state)

    def _mark_capture(self, open_: bool) -> None:
        if open_ == self._capture_open:
            return
        self._capture_open = open_
        if open_:
            _ACTIVE_CAPTURES.inc()
        else:
            _ACTIVE_CAPTURES.dec()

    def _arm_grace_timer(self) -> None:
        self._cancel_grace_timer()
        generation = self._generation
        delay = max(0.0, float(self._config.final_result_grace_sec))

        async def _fallback() -> None:
            await asyncio.sleep(delay)
            self._grace_task = None
            if generation != self._generation or self._session.state is not VoiceState.PROCESSING:
                return
            partial = self._session.partial_transcript
            logger.info(
                "No final result after stop; settling from partial transcript",
                grace_sec=delay,
                has_partial=bool(partial),
            )
            self._settle(partial, outcome="fallback" if partial else "empty")

        self._grace_task = asyncio.create_task(_fallback())

    def _arm_cooldown_timer(self) -> None:
        if self._cooldown_task is not None:
            self._cooldown_task.cancel()
        delay = max(0.0, float(self._config.error_cooldown_sec))

        async def _recover() -> None:
            await asyncio.sleep(delay)
            self._cooldown_task = None
            if self._session.state is VoiceState.ERROR:
                self._set_state(VoiceState.IDLE)

        self._cooldown_task = asyncio.create_task(_recover())

    def _cancel_grace_timer(self) -> None:
        if self._grace_task is not None:
            self._grace_task.cancel()
            self._grace_task = None

    def _cancel_timers(self) -> None:
        self._cancel_grace_timer()
        if self._cooldown_task is not None:
            self._cooldown_task.cancel()
            self._cooldown_task = None


__all__ = [
    "PermissionStatus",
    "SpeechEvent",
    "SpeechEventKind",
    "SpeechPlatform",
    "SpeechSession",
    "VoiceSession",
    "VoiceState",
]
