"""
Shared pytest fixtures for session engine tests.

Provides a scripted LLM transport, a scripted speech platform and a sleep
replacement that records retry delays instead of waiting.
"""

import asyncio
from typing import Any, List

import pytest

from neuralos.config import LLMConfig
from neuralos.core.speech_session import PermissionStatus, SpeechEventKind, SpeechPlatform
from neuralos.pipelines.base import CompletionTransport, TextDelta, TransportResponse


class FakeTransport(CompletionTransport):
    """
    Transport driven by a list of outcomes, consumed one per request.

    An outcome is a ``TransportResponse``, an exception to raise, an async
    callable (awaited; used to block or to script a failure), or for streaming
    transports a list of text deltas / exceptions / plain callables (invoked
    in order) / a closing ``TransportResponse``.
    """

    def __init__(self, outcomes: List[Any] = None, *, streaming: bool = False):
        self.outcomes = list(outcomes or [])
        self.supports_streaming = streaming
        self.payloads: List[dict] = []
        self.api_keys: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.aborted = 0

    def _next(self):
        if self.outcomes:
            return self.outcomes.pop(0)
        return TransportResponse(text="ok", input_tokens=1, output_tokens=1, stop_reason="end_turn")

    async def complete(self, payload, api_key, timeout):
        self.payloads.append(payload)
        self.api_keys.append(api_key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            outcome = self._next()
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return await outcome()
            return outcome
        except asyncio.CancelledError:
            self.aborted += 1
            raise
        finally:
            self.in_flight -= 1

    async def stream_events(self, payload, api_key, timeout):
        self.payloads.append(payload)
        self.api_keys.append(api_key)
        outcome = self._next()
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, TransportResponse):
            outcome = [outcome.text, outcome] if outcome.text else [outcome]
        for item in outcome:
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                item()
                continue
            if isinstance(item, str):
                yield TextDelta(item)
            else:
                yield item


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeSpeechPlatform(SpeechPlatform):
    def __init__(
        self,
        *,
        available: bool = True,
        permission: PermissionStatus = PermissionStatus.GRANTED,
        request_result: PermissionStatus = PermissionStatus.GRANTED,
    ):
        super().__init__()
        self.available = available
        self.permission = permission
        self.request_result = request_result
        self.calls: List[Any] = []
        self.active_captures = 0
        self.max_active_captures = 0
        self.start_error: Exception = None
        # Emitted from inside stop(), like a recognizer flushing its result.
        self.final_on_stop: str = None

    async def check_available(self) -> bool:
        self.calls.append("check_available")
        return self.available

    async def permission_status(self) -> PermissionStatus:
        return self.permission

    async def request_permission(self) -> PermissionStatus:
        self.calls.append("request_permission")
        self.permission = self.request_result
        return self.request_result

    async def start(self, locale: str) -> None:
        self.calls.append(("start", locale))
        if self.start_error is not None:
            raise self.start_error
        self.active_captures += 1
        self.max_active_captures = max(self.max_active_captures, self.active_captures)

    async def stop(self) -> None:
        self.calls.append("stop")
        await asyncio.sleep(0)
        if self.final_on_stop is not None:
            self.emit(SpeechEventKind.FINAL, self.final_on_stop)
        self.active_captures = max(0, self.active_captures - 1)

    async def cancel(self) -> None:
        self.calls.append("cancel")
        self.active_captures = max(0, self.active_captures - 1)

    async def destroy(self) -> None:
        self.calls.append("destroy")


@pytest.fixture
def llm_config():
    return LLMConfig(api_key="sk-ant-test-key")


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def speech_platform():
    return FakeSpeechPlatform()


@pytest.fixture
def speech_platform_factory():
    return FakeSpeechPlatform
