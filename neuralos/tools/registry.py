"""
Action registry - maps command names (and their aliases) to actions.

Models are not consistent about command names ("set_timer", "remind",
"set_reminder" all mean the same thing), so lookups go through an alias
table. One registry is constructed and owned by the application entry point.
"""

from typing import Dict, Iterable, List, Optional

import structlog
from prometheus_client import Counter

from .base import Action, ActionDefinition, ActionDispatcher, ActionResult

logger = structlog.get_logger(__name__)

_ACTION_EXECUTIONS_TOTAL = Counter(
    "neuralos_action_executions_total",
    "Dispatched device actions by outcome",
    labelnames=("outcome",),
)


class ActionRegistry(ActionDispatcher):
    """
    Registry for all available device actions.

    Manages action registration, alias-aware lookup, prompt text generation
    and dispatch. ``execute`` never raises to the caller.
    """

    # Command aliases produced by prompts and older model outputs
    ACTION_ALIASES = {
        "notify": "send_notification",
        "show_notification": "send_notification",
        "set_reminder": "schedule_notification",
        "set_timer": "schedule_notification",
        "remind": "schedule_notification",
    }

    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}
        self._aliases: Dict[str, str] = dict(self.ACTION_ALIASES)

    def register(self, action: Action) -> None:
        """
        Register an action under its definition name and aliases.

        Args:
            action: Action instance; an existing action with the same name is replaced
        """
        name = action.definition.name
        if name in self._actions:
            logger.warning("Action already registered, overwriting", action=name)
        self._actions[name] = action
        for alias in action.definition.aliases:
            self._aliases[alias] = name
        logger.debug("Registered action", action=name, aliases=list(action.definition.aliases))

    def register_many(self, actions: Iterable[Action]) -> None:
        for action in actions:
            self.register(action)

    def canonicalize(self, name: str) -> str:
        """Return canonical command name for alias-aware comparisons."""
        raw_name = str(name or "").strip()
        if not raw_name:
            return ""
        return self._aliases.get(raw_name, raw_name)

    def get(self, name: str) -> Optional[Action]:
        """
        Get action by name, with alias support.

        Args:
            name: Command name (e.g., "schedule_notification" or aliases like "set_timer")

        Returns:
            Action instance or None if not found
        """
        action = self._actions.get(name)
        if action:
            return action
        return self._actions.get(self.canonicalize(name))

    def has(self, name: str) -> bool:
        """Return True if an action is registered under this exact name (no alias resolution)."""
        return name in self._actions

    def unregister(self, name: str) -> bool:
        """Unregister an action by exact name and drop the aliases pointing at it."""
        if self._actions.pop(name, None) is None:
            return False
        self._aliases = {alias: target for alias, target in self._aliases.items() if target != name}
        logger.info("Unregistered action", action=name)
        return True

    def get_all(self) -> List[Action]:
        return list(self._actions.values())

    def get_definitions(self) -> List[ActionDefinition]:
        return [action.definition for action in self._actions.values()]

    def to_prompt_text(self) -> str:
        """
        Command list for the ``AVAILABLE COMMANDS`` prompt section.

        Returns:
            One ``ActionDefinition.to_prompt_line`` per registered action, in
            registration order
        """
        return "\n".join(definition.to_prompt_line() for definition in self.get_definitions())

    async def execute(self, command: str, params: Optional[Dict[str, str]] = None) -> ActionResult:
        """
        Run a command through its action.

        Args:
            command: Command name or alias from a parsed ``ACTIONS:`` directive
            params: String parameters from the directive

        Returns:
            ActionResult; unknown commands, missing parameters and action
            exceptions all become failed results
        """
        params = dict(params or {})
        action = self.get(command)
        if action is None:
            logger.warning("Unknown action command", command=command)
            _ACTION_EXECUTIONS_TOTAL.labels("unknown").inc()
            return ActionResult.failed(f'Command "{command}" not yet supported')

        name = action.definition.name
        missing = action.missing_parameters(params)
        if missing:
            logger.warning("Action missing required params", action=name, missing=missing)
            _ACTION_EXECUTIONS_TOTAL.labels("invalid").inc()
            return ActionResult.failed(f"Missing {', '.join(missing)} for {name}")

        logger.info("Executing action", action=name, command=command, param_keys=sorted(params))
        try:
            result = await action.execute(params)
        except Exception:
            logger.exception("Action failed", action=name)
            _ACTION_EXECUTIONS_TOTAL.labels("error").inc()
            return ActionResult.failed(f"Failed to execute {name}")

        _ACTION_EXECUTIONS_TOTAL.labels("success" if result.success else "failed").inc()
        return result


__all__ = ["ActionRegistry"]
