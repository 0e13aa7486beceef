"""
Base classes for device actions.

A parsed ``ActionDescriptor`` names a command and carries string params; the
session engine does not interpret either. It routes them to an
``ActionDispatcher``, normally an ``ActionRegistry`` of ``Action`` objects.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: str

    @classmethod
    def ok(cls, message: str) -> "ActionResult":
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, message: str) -> "ActionResult":
        return cls(success=False, message=message)


@dataclass
class ActionParameter:
    """Definition of a command parameter (values always arrive as strings)."""
    name: str
    description: str
    required: bool = False
    default: Optional[str] = None

    def to_prompt_text(self) -> str:
        if self.default is None:
            return f'"{self.name}"'
        return f'"{self.name}" (default "{self.default}")'


@dataclass
class ActionDefinition:
    name: str
    description: str
    parameters: List[ActionParameter] = field(default_factory=list)
    aliases: Tuple[str, ...] = ()

    def to_prompt_line(self) -> str:
        """One line for the model's command list.

        Example: ``- "call": opens the dialer (params: "number", "app" (default "phone"))``
        """
        line = f'- "{self.name}": {self.description}'
        if self.parameters:
            names = ", ".join(p.to_prompt_text() for p in self.parameters)
            line += f" (params: {names})"
        return line


class Action(ABC):
    """
    Abstract base class for all device actions.

    Subclasses provide a ``definition`` and implement ``execute``. Raising from
    ``execute`` is allowed; the registry turns it into a failed result.
    """

    @property
    @abstractmethod
    def definition(self) -> ActionDefinition:
        """Return action definition with metadata."""

    @abstractmethod
    async def execute(self, params: Dict[str, str]) -> ActionResult:
        """Perform the action."""

    def missing_parameters(self, params: Dict[str, str]) -> List[str]:
        return [
            p.name
            for p in self.definition.parameters
            if p.required and not params.get(p.name)
        ]


class ActionDispatcher(ABC):
    """Collaborator boundary: route a command to a concrete device effect."""

    @abstractmethod
    async def execute(self, command: str, params: Optional[Dict[str, str]] = None) -> ActionResult:
        """Execute ``command``; never raises."""

    def to_prompt_text(self) -> str:
        """
        Commands this dispatcher understands, one prompt line each.

        Returns:
            The AVAILABLE COMMANDS listing for the system prompt, or an empty
            string to keep the built-in listing.
        """
        return ""


__all__ = [
    "Action",
    "ActionDefinition",
    "ActionDispatcher",
    "ActionParameter",
    "ActionResult",
]
