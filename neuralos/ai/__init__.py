"""LLM completion client, request models and error taxonomy."""

from .cancellation import CancellationToken
from .client import CompletionClient
from .errors import CompletionError, ErrorType, classify_error
from .models import CompletionOptions, CompletionRequest, CompletionResult, Message, SessionStats, StreamChunk

__all__ = [
    "CancellationToken",
    "CompletionClient",
    "CompletionError",
    "CompletionOptions",
    "CompletionRequest",
    "CompletionResult",
    "ErrorType",
    "Message",
    "SessionStats",
    "StreamChunk",
    "classify_error",
]
