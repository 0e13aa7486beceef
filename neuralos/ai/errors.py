"""
LLM error taxonomy.

Every failure the completion client surfaces is a ``CompletionError`` with a
fixed, user-presentable message. The raw transport error is logged here and
nowhere else.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

import aiohttp
import structlog

from ..pipelines.base import InvalidTransportResponse, TransportHTTPError
from .cancellation import RequestCancelled

logger = structlog.get_logger(__name__)

DEFAULT_RATE_LIMIT_WAIT_MS = 15000
UNKNOWN_RETRY_WAIT_MS = 2000


class ErrorType(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


MESSAGES = {
    "cancelled": "Request was cancelled.",
    "timeout": "The request timed out. Try again.",
    "network": "Can't reach the server. Check your connection.",
    "auth": "API key is invalid or expired. Check your settings.",
    "missing_key": "No API key configured. Add your Anthropic key in settings.",
    "rate_limit": "Rate limited. Waiting before retrying.",
    "bad_request": "The request was rejected. Try rephrasing or start a new conversation.",
    "server": "Claude's servers are busy. Retrying...",
    "unknown": "Something went wrong. Try again.",
}


class CompletionError(Exception):
    def __init__(
        self,
        error_type: ErrorType,
        message: str,
        *,
        retryable: bool = False,
        retry_after_ms: Optional[int] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms
        self.status = status

    def __repr__(self) -> str:
        return (
            f"CompletionError(type={self.error_type.value!r}, retryable={self.retryable}, "
            f"retry_after_ms={self.retry_after_ms}, status={self.status})"
        )


class MissingCredentialError(CompletionError):
    def __init__(self) -> None:
        super().__init__(ErrorType.AUTH, MESSAGES["missing_key"], retryable=False)


def _from_status(status: int, retry_after_ms: Optional[int], default_rate_limit_wait_ms: int) -> CompletionError:
    if status in (401, 403):
        return CompletionError(ErrorType.AUTH, MESSAGES["auth"], retryable=False, status=status)
    if status == 429:
        wait = retry_after_ms if retry_after_ms is not None else default_rate_limit_wait_ms
        return CompletionError(
            ErrorType.RATE_LIMIT, MESSAGES["rate_limit"], retryable=True, retry_after_ms=wait, status=status
        )
    if status == 408:
        return CompletionError(ErrorType.TIMEOUT, MESSAGES["timeout"], retryable=False, status=status)
    if 400 <= status < 500:
        return CompletionError(ErrorType.UNKNOWN, MESSAGES["bad_request"], retryable=False, status=status)
    if status >= 500:
        return CompletionError(
            ErrorType.SERVER, MESSAGES["server"], retryable=True, retry_after_ms=retry_after_ms, status=status
        )
    return CompletionError(
        ErrorType.UNKNOWN, MESSAGES["unknown"], retryable=True, retry_after_ms=UNKNOWN_RETRY_WAIT_MS, status=status
    )


def classify_error(exc: BaseException, *, default_rate_limit_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS) -> CompletionError:
    """Map a raw failure onto the taxonomy.

    Checked in order: cancellation/timeout, network, auth, rate limit,
    bad request, server, fallback.
    """
    if isinstance(exc, CompletionError):
        return exc

    if isinstance(exc, (RequestCancelled, asyncio.CancelledError)):
        return CompletionError(ErrorType.TIMEOUT, MESSAGES["cancelled"], retryable=False)
    if isinstance(exc, asyncio.TimeoutError):
        logger.warning("LLM request timed out")
        return CompletionError(ErrorType.TIMEOUT, MESSAGES["timeout"], retryable=False)

    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, ConnectionError)):
        logger.warning("LLM transport unreachable", error=str(exc), error_class=type(exc).__name__)
        return CompletionError(ErrorType.NETWORK, MESSAGES["network"], retryable=True)

    if isinstance(exc, TransportHTTPError):
        logger.warning(
            "LLM request failed",
            status=exc.status,
            retry_after_ms=exc.retry_after_ms,
            body_preview=(exc.body or "")[:200],
        )
        return _from_status(exc.status, exc.retry_after_ms, default_rate_limit_wait_ms)

    if isinstance(exc, aiohttp.ClientResponseError):
        logger.warning("LLM request failed", status=exc.status, error=exc.message)
        return _from_status(exc.status, None, default_rate_limit_wait_ms)

    if isinstance(exc, OSError):
        logger.warning("LLM transport OS error", error=str(exc))
        return CompletionError(ErrorType.NETWORK, MESSAGES["network"], retryable=True)

    if isinstance(exc, InvalidTransportResponse):
        logger.warning("LLM returned an unreadable response", error=str(exc))
    else:
        logger.error("Unclassified LLM error", error=str(exc), error_class=type(exc).__name__)
    return CompletionError(ErrorType.UNKNOWN, MESSAGES["unknown"], retryable=True, retry_after_ms=UNKNOWN_RETRY_WAIT_MS)


__all__ = [
    "CompletionError",
    "DEFAULT_RATE_LIMIT_WAIT_MS",
    "ErrorType",
    "MESSAGES",
    "MissingCredentialError",
    "classify_error",
]
