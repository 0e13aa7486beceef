"""
Application configuration models.

``AppConfig`` is the process-wide source of defaults. Per-user overrides
(model, token budget, temperature, feature toggles) live in
``SettingsStore`` and fall back to these values when unset.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .loaders import load_with_local_override, resolve_config_path

DEFAULT_CONFIG_PATH = "config/neuralos.yaml"

DEFAULT_MODEL = "claude-sonnet-4-20250514"
SUPPORTED_MODELS = (
    "claude-sonnet-4-20250514",
    "claude-opus-4-20250514",
    "claude-haiku-4-5-20251001",
)


class LLMConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://api.anthropic.com/v1/messages"
    anthropic_version: str = "2023-06-01"
    model: str = DEFAULT_MODEL
    max_tokens: int = 1024
    temperature: float = 0.7
    request_timeout_sec: float = 60.0
    max_retries: int = 3
    base_retry_delay_ms: int = 1000
    default_rate_limit_wait_ms: int = 15000
    history_limit: int = 10
    # Request SSE deltas instead of one atomic response.
    stream: bool = False

    @field_validator("max_retries", "history_limit")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value


class SpeechConfig(BaseModel):
    locale: str = "en-US"
    # Platforms occasionally drop the result callback after a manual stop;
    # this is how long to wait before falling back to the last partial.
    final_result_grace_sec: float = 1.5
    error_cooldown_sec: float = 2.0


class ConversationConfig(BaseModel):
    auto_execute_actions: bool = False
    system_context: Optional[str] = None


class FeatureFlags(BaseModel):
    voice_enabled: bool = True
    tts_enabled: bool = True
    haptics_enabled: bool = True
    notifications_enabled: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class AppConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    settings_path: Optional[str] = None


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load ``AppConfig`` from YAML; a missing default file yields pure defaults.

    ``ANTHROPIC_API_KEY`` fills ``llm.api_key`` when the file leaves it empty.
    """
    explicit = path is not None
    resolved = resolve_config_path(path or os.getenv("NEURALOS_CONFIG", DEFAULT_CONFIG_PATH))

    data: Dict[str, Any] = {}
    if explicit or os.path.isfile(resolved):
        data = load_with_local_override(resolved)

    config = AppConfig(**data)
    if not config.llm.api_key:
        env_key = os.getenv("ANTHROPIC_API_KEY")
        if env_key:
            config.llm.api_key = env_key
    return config


__all__ = [
    "AppConfig",
    "ConversationConfig",
    "DEFAULT_MODEL",
    "FeatureFlags",
    "LLMConfig",
    "LoggingConfig",
    "SUPPORTED_MODELS",
    "SpeechConfig",
    "load_config",
]
