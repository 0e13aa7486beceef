"""Response directives and device action dispatch."""

from .base import Action, ActionDefinition, ActionDispatcher, ActionParameter, ActionResult
from .parser import ActionDescriptor, CardHeader, ParsedDirective, parse_response
from .registry import ActionRegistry

__all__ = [
    "Action",
    "ActionDefinition",
    "ActionDescriptor",
    "ActionDispatcher",
    "ActionParameter",
    "ActionRegistry",
    "ActionResult",
    "CardHeader",
    "ParsedDirective",
    "parse_response",
]
