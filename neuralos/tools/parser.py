"""
Response directive parser.

Model replies may carry two in-band control lines next to the display text:

    CARD: {"title": "System Control", "icon": "🔦", "accentColor": "#FF9800"}
    ACTIONS: [{"label": "Turn Off", "command": "flashlight_off", "variant": "warning"}]

Each is a prefix at the start of a line followed by a JSON value that may span
several lines. The end of the value is found with a bracket-balancing scan
that respects JSON strings and escapes, so the parser is safe to run on a
response that is still streaming in: an unterminated value is reported as
``pending`` and hidden from the display text, never parsed.

Parsing is pure: the same text always yields an equal ``ParsedDirective``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

CARD_PREFIX = "CARD:"
ACTIONS_PREFIX = "ACTIONS:"

VARIANTS = frozenset({"primary", "success", "warning", "danger", "default"})
DEFAULT_VARIANT = "default"


@dataclass(frozen=True)
class CardHeader:
    title: str
    icon: Optional[str] = None
    accent_color: Optional[str] = None


@dataclass(frozen=True)
class ActionDescriptor:
    label: str
    command: str
    variant: str = DEFAULT_VARIANT
    icon: Optional[str] = None
    params: Optional[Dict[str, str]] = None


@dataclass(frozen=True)
class ParsedDirective:
    display_text: str
    actions: Tuple[ActionDescriptor, ...] = ()
    card_header: Optional[CardHeader] = None
    # A directive has started but its JSON is not complete yet.
    pending: bool = False


@dataclass(frozen=True)
class _Directive:
    prefix: str
    start: int
    end: int
    raw_json: Optional[str]
    pending: bool


def scan_json_value(text: str, start: int) -> Optional[int]:
    """Index one past the JSON object/array opening at ``text[start]``.

    ``None`` while the value is unterminated. Mismatched bracket kinds still
    close a level; such values fail ``json.loads`` later and count as absent.
    """
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth <= 0:
                return index + 1
    return None


def _line_end(text: str, index: int) -> int:
    """Index just past the newline ending the line that contains ``index``."""
    newline = text.find("\n", index)
    return len(text) if newline == -1 else newline + 1


def _skip_whitespace(text: str, index: int) -> int:
    while index < len(text) and text[index] in " \t\r\n":
        index += 1
    return index


def _is_partial_prefix(fragment: str) -> bool:
    return bool(fragment) and any(
        prefix.startswith(fragment) and prefix != fragment for prefix in (CARD_PREFIX, ACTIONS_PREFIX)
    )


def _find_directives(text: str, complete: bool) -> List[_Directive]:
    found: List[_Directive] = []
    line_start = 0
    length = len(text)

    while line_start < length:
        cursor = line_start
        while cursor < length and text[cursor] in " \t":
            cursor += 1

        prefix = next((p for p in (CARD_PREFIX, ACTIONS_PREFIX) if text.startswith(p, cursor)), None)

        if prefix is None:
            line_end = _line_end(text, line_start)
            if not complete and line_end == length and _is_partial_prefix(text[cursor:]):
                # Trailing "ACTI" of a streaming response: wait for more text.
                found.append(_Directive("", line_start, length, None, True))
            line_start = line_end
            continue

        value_start = _skip_whitespace(text, cursor + len(prefix))
        if value_start >= length:
            found.append(_Directive(prefix, line_start, length, None, True))
            break

        opener = "{" if prefix == CARD_PREFIX else "["
        if text[value_start] != opener:
            # "CARD: Visa ending 4242" is prose, not a directive.
            line_start = _line_end(text, cursor)
            continue

        value_end = scan_json_value(text, value_start)
        if value_end is None:
            found.append(_Directive(prefix, line_start, length, None, True))
            break

        end = value_end
        while end < length and text[end] in " \t\r":
            end += 1
        if end < length and text[end] == "\n":
            end += 1
        # Anything after the value on the same line stays display text.
        found.append(_Directive(prefix, line_start, end, text[value_start:value_end], False))
        line_start = end

    return found


def _load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as exc:
        logger.debug("Ignoring malformed directive JSON", error=str(exc), preview=raw[:80])
        return None


def _coerce_params(value: Any) -> Optional[Dict[str, str]]:
    if not isinstance(value, dict):
        return None
    params: Dict[str, str] = {}
    for key, item in value.items():
        if isinstance(item, str):
            params[str(key)] = item
        elif isinstance(item, bool):
            params[str(key)] = "true" if item else "false"
        elif isinstance(item, (int, float)):
            params[str(key)] = str(item)
    return params


def _action_from(item: Any) -> Optional[ActionDescriptor]:
    if not isinstance(item, dict):
        return None
    label = item.get("label")
    command = item.get("command")
    if not isinstance(label, str) or not isinstance(command, str):
        return None
    variant = item.get("variant")
    icon = item.get("icon")
    return ActionDescriptor(
        label=label,
        command=command,
        variant=variant if variant in VARIANTS else DEFAULT_VARIANT,
        icon=icon if isinstance(icon, str) else None,
        params=_coerce_params(item.get("params")),
    )


def parse_actions(raw: str) -> Optional[Tuple[ActionDescriptor, ...]]:
    """Actions from a complete ``ACTIONS:`` JSON value; ``None`` when malformed."""
    value = _load(raw)
    if not isinstance(value, list):
        return None
    actions = []
    for item in value:
        action = _action_from(item)
        if action is None:
            logger.debug("Dropping invalid action element", element_type=type(item).__name__)
            continue
        actions.append(action)
    return tuple(actions)


def parse_card_header(raw: str) -> Optional[CardHeader]:
    value = _load(raw)
    if not isinstance(value, dict) or not isinstance(value.get("title"), str):
        return None
    icon = value.get("icon")
    accent = value.get("accentColor", value.get("accent_color"))
    return CardHeader(
        title=value["title"],
        icon=icon if isinstance(icon, str) else None,
        accent_color=accent if isinstance(accent, str) else None,
    )


def parse_response(text: Optional[str], *, complete: bool = False) -> ParsedDirective:
    """Split raw response text into display text, actions and card header.

    With ``complete=True`` (the final text of a response) a trailing fragment
    that only looks like the start of a directive prefix stays display text.
    """
    text = text or ""
    directives = _find_directives(text, complete)

    card: Optional[CardHeader] = None
    actions: Optional[Tuple[ActionDescriptor, ...]] = None
    pending = False
    pieces: List[str] = []
    cursor = 0

    for directive in directives:
        pieces.append(text[cursor : directive.start])
        cursor = directive.end
        if directive.pending:
            pending = True
            continue
        if directive.raw_json is None:
            continue
        if directive.prefix == CARD_PREFIX and card is None:
            card = parse_card_header(directive.raw_json)
        elif directive.prefix == ACTIONS_PREFIX and actions is None:
            actions = parse_actions(directive.raw_json)
    pieces.append(text[cursor:])

    return ParsedDirective(
        display_text="".join(pieces).strip(),
        actions=actions or (),
        card_header=card,
        pending=pending,
    )


__all__ = [
    "ACTIONS_PREFIX",
    "ActionDescriptor",
    "CARD_PREFIX",
    "CardHeader",
    "ParsedDirective",
    "VARIANTS",
    "parse_actions",
    "parse_card_header",
    "parse_response",
    "scan_json_value",
]
