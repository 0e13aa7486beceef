"""
User settings store.

Key/value persistence for the settings a user can change at runtime. Reads
fall back to ``AppConfig`` defaults when a key was never set. When a path is
given, every write is flushed to a YAML file.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import structlog
import yaml

from . import AppConfig

logger = structlog.get_logger(__name__)

API_KEY_PREFIX = "sk-ant-"

MIN_MAX_TOKENS = 256
MAX_MAX_TOKENS = 4096

_KEY_API_KEY = "anthropic_api_key"
_KEY_MODEL = "model"
_KEY_MAX_TOKENS = "max_tokens"
_KEY_TEMPERATURE = "temperature"
_KEY_ONBOARDING = "onboarding_complete"

_FLAG_KEYS = ("voice_enabled", "tts_enabled", "haptics_enabled", "notifications_enabled")
_RESETTABLE = (_KEY_MODEL, _KEY_MAX_TOKENS, _KEY_TEMPERATURE) + _FLAG_KEYS


class InvalidApiKeyError(ValueError):
    """Raised when a credential does not look like an Anthropic key."""


class SettingsStore:
    def __init__(self, config: Optional[AppConfig] = None, path: Optional[str] = None):
        self._config = config or AppConfig()
        self._path = path
        self._values: Dict[str, Any] = {}
        if path and os.path.isfile(path):
            self._load()

    # Credential ---------------------------------------------------------

    def set_api_key(self, key: str) -> None:
        if not key or not key.startswith(API_KEY_PREFIX):
            raise InvalidApiKeyError(f'Invalid API key format. Anthropic keys start with "{API_KEY_PREFIX}".')
        self._set(_KEY_API_KEY, key)

    def get_api_key(self) -> Optional[str]:
        return self._values.get(_KEY_API_KEY) or self._config.llm.api_key

    def has_api_key(self) -> bool:
        return bool(self.get_api_key())

    def clear_api_key(self) -> None:
        self._remove(_KEY_API_KEY)

    # Model parameters ---------------------------------------------------

    def get_model(self) -> str:
        return self._values.get(_KEY_MODEL) or self._config.llm.model

    def set_model(self, model: str) -> None:
        self._set(_KEY_MODEL, model)

    def get_max_tokens(self) -> int:
        value = self._values.get(_KEY_MAX_TOKENS)
        return int(value) if value is not None else self._config.llm.max_tokens

    def set_max_tokens(self, tokens: int) -> None:
        self._set(_KEY_MAX_TOKENS, min(max(int(tokens), MIN_MAX_TOKENS), MAX_MAX_TOKENS))

    def get_temperature(self) -> float:
        value = self._values.get(_KEY_TEMPERATURE)
        return float(value) if value is not None else self._config.llm.temperature

    def set_temperature(self, temperature: float) -> None:
        self._set(_KEY_TEMPERATURE, min(max(float(temperature), 0.0), 1.0))

    # Feature flags ------------------------------------------------------

    def is_enabled(self, flag: str) -> bool:
        if flag not in _FLAG_KEYS:
            raise KeyError(f"Unknown feature flag: {flag}")
        value = self._values.get(flag)
        if value is None:
            return bool(getattr(self._config.features, flag))
        return bool(value)

    def set_enabled(self, flag: str, enabled: bool) -> None:
        if flag not in _FLAG_KEYS:
            raise KeyError(f"Unknown feature flag: {flag}")
        self._set(flag, bool(enabled))

    def is_onboarding_complete(self) -> bool:
        return bool(self._values.get(_KEY_ONBOARDING, False))

    def set_onboarding_complete(self, complete: bool) -> None:
        self._set(_KEY_ONBOARDING, bool(complete))

    # Bulk ---------------------------------------------------------------

    def all_settings(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {
            "has_api_key": self.has_api_key(),
            "model": self.get_model(),
            "max_tokens": self.get_max_tokens(),
            "temperature": self.get_temperature(),
            "onboarding_complete": self.is_onboarding_complete(),
        }
        for flag in _FLAG_KEYS:
            snapshot[flag] = self.is_enabled(flag)
        return snapshot

    def reset_settings(self) -> None:
        """Restore defaults for everything except the credential and onboarding."""
        for key in _RESETTABLE:
            self._values.pop(key, None)
        self._flush()

    def clear_all(self) -> None:
        self._values.clear()
        self._flush()

    # Internals ----------------------------------------------------------

    def _set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._flush()

    def _remove(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._flush()

    def _load(self) -> None:
        try:
            with open(self._path, "r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Settings file unreadable; starting from defaults", path=self._path, error=str(exc))
            return
        if isinstance(data, dict):
            self._values.update(data)

    def _flush(self) -> None:
        if not self._path:
            return
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as handle:
            yaml.safe_dump(self._values, handle, default_flow_style=False)
        logger.debug("Settings persisted", path=self._path, keys=sorted(self._values))


__all__ = ["InvalidApiKeyError", "SettingsStore"]
