"""
Speech recognition error taxonomy.

Platform error codes are numeric and platform specific; they are mapped
through a fixed table onto ``SpeechError`` values carrying a message that is
safe to show the user. Unmapped codes become ``unknown``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Union

import structlog

logger = structlog.get_logger(__name__)


class SpeechErrorCode(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NO_SPEECH = "no_speech"
    NO_MATCH = "no_match"
    NETWORK = "network"
    NETWORK_TIMEOUT = "network_timeout"
    AUDIO = "audio"
    BUSY = "busy"
    SERVER = "server"
    SERVER_DISCONNECTED = "server_disconnected"
    CLIENT = "client"
    TOO_MANY_REQUESTS = "too_many_requests"
    LANGUAGE_UNSUPPORTED = "language_unsupported"
    LANGUAGE_UNAVAILABLE = "language_unavailable"
    NOT_AVAILABLE = "not_available"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SpeechError:
    code: SpeechErrorCode
    message: str
    # Offer the keyboard instead of the microphone.
    suggest_typing: bool = False
    # The user can simply tap the mic again.
    retryable: bool = True


def _err(code: SpeechErrorCode, message: str, *, suggest_typing: bool = False, retryable: bool = True) -> SpeechError:
    return SpeechError(code=code, message=message, suggest_typing=suggest_typing, retryable=retryable)


PERMISSION_DENIED = _err(
    SpeechErrorCode.PERMISSION_DENIED,
    "Microphone access denied. Enable it in Settings.",
    suggest_typing=True,
    retryable=False,
)

NOT_AVAILABLE = _err(
    SpeechErrorCode.NOT_AVAILABLE,
    "Voice recognition is not available on this device.",
    suggest_typing=True,
    retryable=False,
)

UNKNOWN = _err(SpeechErrorCode.UNKNOWN, "Something went wrong. Try again.")

# android.speech.SpeechRecognizer.ERROR_* constants.
ANDROID_ERRORS: Dict[str, SpeechError] = {
    "1": _err(SpeechErrorCode.NETWORK_TIMEOUT, "Network timed out. Try again."),
    "2": _err(SpeechErrorCode.NETWORK, "Network error. Check your connection."),
    "3": _err(SpeechErrorCode.AUDIO, "Microphone error. Make sure no other app is using it."),
    "4": _err(SpeechErrorCode.SERVER, "Speech service error. Try again."),
    "5": _err(SpeechErrorCode.CLIENT, "Voice recognition error. Try again."),
    "6": _err(SpeechErrorCode.NO_SPEECH, "Didn't catch that. Try speaking louder."),
    "7": _err(SpeechErrorCode.NO_MATCH, "Didn't catch that. Try speaking louder."),
    "8": _err(SpeechErrorCode.BUSY, "Voice recognition is busy. Try again."),
    "9": PERMISSION_DENIED,
    "10": _err(SpeechErrorCode.TOO_MANY_REQUESTS, "Too many requests. Wait a moment and try again."),
    "11": _err(SpeechErrorCode.SERVER_DISCONNECTED, "Speech service disconnected. Try again."),
    "12": _err(SpeechErrorCode.LANGUAGE_UNSUPPORTED, "Language not supported. Try again in English."),
    "13": _err(SpeechErrorCode.LANGUAGE_UNAVAILABLE, "Language unavailable. Check your connection."),
}


def map_platform_error(code: Union[str, int, None], table: Dict[str, SpeechError] = ANDROID_ERRORS) -> SpeechError:
    key = "" if code is None else str(code).strip()
    mapped = table.get(key)
    if mapped is None:
        logger.warning("Unmapped speech platform error code", code=key)
        return UNKNOWN
    return mapped


__all__ = [
    "ANDROID_ERRORS",
    "NOT_AVAILABLE",
    "PERMISSION_DENIED",
    "SpeechError",
    "SpeechErrorCode",
    "UNKNOWN",
    "map_platform_error",
]
