"""
YAML configuration loading.

Handles:
- Resolution of relative config paths against the project root
- ``${VAR}``, ``${VAR:-default}`` and ``${VAR:=default}`` expansion before parsing
- An optional sibling ``*.local.yaml`` override, deep-merged over the base file
"""

import os
import re
from pathlib import Path
from typing import Any, Dict

import structlog
import yaml

logger = structlog.get_logger("config.loaders")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

_ENV_REF = re.compile(r"\$\{([^}:]+)(:-|:=)?([^}]*)?\}")


def expand_env_refs(text: str) -> str:
    """Substitute environment references, honouring shell-style defaults.

    An unset ``${VAR}`` without a default is left untouched so the YAML
    still shows what was missing.
    """

    def _sub(match: "re.Match[str]") -> str:
        name, operator, default = match.group(1), match.group(2), match.group(3) or ""
        value = os.environ.get(name)
        if operator:
            return default if not value else value
        return value if value is not None else match.group(0)

    return os.path.expandvars(_ENV_REF.sub(_sub, text))


def resolve_config_path(path: str) -> str:
    """
    Resolve a configuration path against the project root.

    Args:
        path: Absolute path, or a path relative to the repository root

    Returns:
        Absolute path string
    """
    if os.path.isabs(path):
        return path
    return str(_PROJECT_ROOT / path)


def load_yaml(path: str) -> Dict[str, Any]:
    """
    Load YAML file with environment variable expansion.

    Args:
        path: Path to a YAML configuration file

    Returns:
        Parsed configuration dictionary; an empty file yields ``{}``

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        ValueError: If the document root is not a mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = handle.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        data = yaml.safe_load(expand_env_refs(raw))
    except yaml.YAMLError as exc:
        raise yaml.YAMLError(f"Error parsing YAML configuration {path}: {exc}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return data


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge *override* into a copy of *base*.

    Nested mappings merge recursively, an explicit ``None`` deletes the key,
    anything else replaces the base value.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_with_local_override(path: str) -> Dict[str, Any]:
    """
    Load a config file and deep-merge its ``.local`` sibling over it.

    ``config/neuralos.yaml`` picks up ``config/neuralos.local.yaml`` when it
    exists. An unreadable override is logged and skipped.

    Args:
        path: Path to the base YAML file

    Returns:
        Merged configuration dictionary
    """
    base = load_yaml(path)

    stem, ext = os.path.splitext(path)
    local_path = f"{stem}.local{ext}"
    if not os.path.isfile(local_path):
        return base

    try:
        local = load_yaml(local_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning(
            "Ignoring unreadable local config override",
            local_path=local_path,
            error=str(exc),
        )
        return base

    logger.info("Merging local config override", local_path=local_path)
    return deep_merge(base, local)
