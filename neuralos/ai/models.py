"""Data types shared by the completion client, transports and the conversation controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from .cancellation import CancellationToken

Role = Literal["user", "assistant"]
InputMethod = Literal["voice", "text"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class StreamChunk:
    delta_text: str
    accumulated_text: str
    is_final: bool = False


@dataclass
class CompletionOptions:
    """Per-request overrides; ``None`` means "use the configured default"."""

    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    input_method: InputMethod = "text"
    history: List[Message] = field(default_factory=list)
    system_context: Optional[str] = None
    system_prompt: Optional[str] = None
    # AVAILABLE COMMANDS listing; the built-in notification commands when unset.
    available_commands: Optional[str] = None
    cancellation_token: Optional[CancellationToken] = None


@dataclass
class CompletionRequest:
    """One logical call to the LLM, fully resolved."""

    messages: List[Message]
    system_prompt: str
    model: str
    max_tokens: int
    temperature: float
    input_method: InputMethod = "text"
    cancellation_token: Optional[CancellationToken] = None

    def to_payload(self, *, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": self.system_prompt,
            "messages": [m.to_dict() for m in self.messages],
        }
        if stream:
            payload["stream"] = True
        return payload


@dataclass(frozen=True)
class CompletionResult:
    text: str
    input_tokens: int
    output_tokens: int
    elapsed_ms: float
    model: str
    input_method: InputMethod = "text"
    stop_reason: Optional[str] = None


@dataclass
class SessionStats:
    input_tokens: int = 0
    output_tokens: int = 0
    request_count: int = 0

    def record(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += int(input_tokens or 0)
        self.output_tokens += int(output_tokens or 0)
        self.request_count += 1


__all__ = [
    "CompletionOptions",
    "CompletionRequest",
    "CompletionResult",
    "InputMethod",
    "Message",
    "Role",
    "SessionStats",
    "StreamChunk",
]
