"""
Core session components.

Speech capture state machine, per-turn conversation controller and the
event channels they publish on.
"""

from .conversation import ActionOutcome, ConversationController, TurnSnapshot, TurnState
from .events import EventBus, Subscription
from .speech_errors import SpeechError, SpeechErrorCode, map_platform_error
from .speech_session import (
    PermissionStatus,
    SpeechEvent,
    SpeechEventKind,
    SpeechPlatform,
    SpeechSession,
    VoiceSession,
    VoiceState,
)

__all__ = [
    "ActionOutcome",
    "ConversationController",
    "EventBus",
    "PermissionStatus",
    "SpeechError",
    "SpeechErrorCode",
    "SpeechEvent",
    "SpeechEventKind",
    "SpeechPlatform",
    "SpeechSession",
    "Subscription",
    "TurnSnapshot",
    "TurnState",
    "VoiceSession",
    "VoiceState",
    "map_platform_error",
]
