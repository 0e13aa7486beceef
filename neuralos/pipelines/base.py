"""
LLM transport abstractions.

A transport knows how to deliver one request payload to a provider and hand
back the generated text. Transports that can stream override
``stream_events`` and set ``supports_streaming``; the default
``stream_events`` wraps one ``complete`` call, and the completion client
simulates streaming from ``complete`` for non-streaming transports.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Union


class TransportHTTPError(Exception):
    """Non-2xx response from the provider."""

    def __init__(self, status: int, body: str = "", retry_after_ms: Optional[int] = None):
        super().__init__(f"HTTP {status}")
        self.status = status
        self.body = body
        self.retry_after_ms = retry_after_ms


class InvalidTransportResponse(Exception):
    """2xx response whose body could not be decoded."""


@dataclass(frozen=True)
class TransportResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None


@dataclass(frozen=True)
class TextDelta:
    text: str


# Items yielded by ``stream_events``: text deltas, then exactly one
# ``TransportResponse`` carrying usage and the stop reason.
StreamEvent = Union[TextDelta, TransportResponse]


class CompletionTransport(ABC):
    """Provider boundary used by ``CompletionClient``."""

    supports_streaming: bool = False

    async def start(self) -> None:
        """Warm up resources (optional)."""

    async def stop(self) -> None:
        """Release resources (optional)."""

    @abstractmethod
    async def complete(self, payload: Dict[str, Any], api_key: str, timeout: float) -> TransportResponse:
        """Send ``payload`` and return the full response."""

    async def stream_events(self, payload: Dict[str, Any], api_key: str, timeout: float) -> AsyncIterator[StreamEvent]:
        """
        Yield text deltas, then one ``TransportResponse`` with usage.

        The default makes one ``complete`` call and yields its text as a
        single delta. Transports with ``supports_streaming`` override this.

        Args:
            payload: Messages API request body
            api_key: Provider credential
            timeout: Request timeout in seconds
        """
        response = await self.complete(payload, api_key, timeout)
        if response.text:
            yield TextDelta(response.text)
        yield TransportResponse("", response.input_tokens, response.output_tokens, response.stop_reason)


__all__ = [
    "CompletionTransport",
    "InvalidTransportResponse",
    "StreamEvent",
    "TextDelta",
    "TransportHTTPError",
    "TransportResponse",
]
