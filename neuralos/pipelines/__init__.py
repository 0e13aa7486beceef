"""LLM transport exports."""

from .anthropic import AnthropicTransport
from .base import CompletionTransport, TextDelta, TransportHTTPError, TransportResponse

__all__ = [
    "AnthropicTransport",
    "CompletionTransport",
    "TextDelta",
    "TransportHTTPError",
    "TransportResponse",
]
