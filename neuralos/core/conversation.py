"""
Per-turn conversation orchestration.

``ConversationController`` drives one user turn at a time through the
completion client::

    idle -> sending -> streaming -> complete | error

and keeps the rolling history used for follow-up requests. The response is
re-parsed for directives as it grows so the surface can show the card header
and hide control lines while text is still arriving.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import structlog
from prometheus_client import Counter, Gauge

from ..ai.cancellation import CancellationToken
from ..ai.client import CompletionClient, bound_history
from ..ai.errors import CompletionError, classify_error
from ..ai.models import CompletionOptions, InputMethod, Message
from ..config import AppConfig
from ..tools.base import ActionDispatcher, ActionResult
from ..tools.parser import ActionDescriptor, CardHeader, ParsedDirective, parse_response
from .events import EventBus

logger = structlog.get_logger(__name__)

_TURNS_TOTAL = Counter(
    "neuralos_conversation_turns_total",
    "Conversation turns by terminal outcome",
    labelnames=("outcome",),
)
_TURNS_IN_FLIGHT = Gauge(
    "neuralos_conversation_turns_in_flight",
    "Conversation turns currently awaiting the model",
)


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class TurnSnapshot:
    state: TurnState
    response: str = ""
    display_text: str = ""
    actions: Tuple[ActionDescriptor, ...] = ()
    card_header: Optional[CardHeader] = None
    pending_directive: bool = False
    error: Optional[CompletionError] = None
    input_method: InputMethod = "text"

    @property
    def is_streaming(self) -> bool:
        return self.state in (TurnState.SENDING, TurnState.STREAMING)


@dataclass(frozen=True)
class ActionOutcome:
    action: ActionDescriptor
    result: ActionResult


_EMPTY_PARSE = ParsedDirective(display_text="")


class ConversationController:
    """Owns the rolling history and the single in-flight turn."""

    def __init__(
        self,
        client: CompletionClient,
        config: Optional[AppConfig] = None,
        dispatcher: Optional[ActionDispatcher] = None,
    ):
        self._client = client
        self._config = config or AppConfig()
        self._dispatcher = dispatcher
        self._history_limit = self._config.llm.history_limit

        self.on_update: EventBus[TurnSnapshot] = EventBus("conversation.update")
        self.on_complete: EventBus[TurnSnapshot] = EventBus("conversation.complete")
        self.on_error: EventBus[CompletionError] = EventBus("conversation.error")
        self.on_action: EventBus[ActionOutcome] = EventBus("conversation.action")

        self._history: List[Message] = []
        self._state = TurnState.IDLE
        self._response = ""
        self._parsed = _EMPTY_PARSE
        self._error: Optional[CompletionError] = None
        self._input_method: InputMethod = "text"

        self._token: Optional[CancellationToken] = None
        self._turn_done: Optional[asyncio.Event] = None
        self._turn_seq = 0

    # Read-only view -------------------------------------------------------

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> Tuple[Message, ...]:
        return tuple(self._history)

    @property
    def response(self) -> str:
        return self._response

    @property
    def display_text(self) -> str:
        return self._parsed.display_text

    @property
    def actions(self) -> Tuple[ActionDescriptor, ...]:
        return self._parsed.actions

    @property
    def card_header(self) -> Optional[CardHeader]:
        return self._parsed.card_header

    @property
    def error(self) -> Optional[CompletionError]:
        return self._error

    @property
    def is_streaming(self) -> bool:
        return self._state in (TurnState.SENDING, TurnState.STREAMING)

    def snapshot(self) -> TurnSnapshot:
        return TurnSnapshot(
            state=self._state,
            response=self._response,
            display_text=self._parsed.display_text,
            actions=self._parsed.actions,
            card_header=self._parsed.card_header,
            pending_directive=self._parsed.pending,
            error=self._error,
            input_method=self._input_method,
        )

    # Turns ----------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        input_method: InputMethod = "text",
        system_context: Optional[str] = None,
    ) -> TurnSnapshot:
        """Run one turn to completion and return its terminal snapshot.

        Blank input is ignored. A turn already in flight is cancelled, and
        awaited, before the new request is issued.
        """
        text = (text or "").strip()
        if not text:
            return self.snapshot()

        await self._cancel_in_flight("superseded")

        self._turn_seq += 1
        turn = self._turn_seq
        token = CancellationToken()
        done = asyncio.Event()
        self._token = token
        self._turn_done = done

        prior = bound_history(self._history, self._history_limit)
        self._append_history(Message(role="user", content=text))

        self._response = ""
        self._parsed = _EMPTY_PARSE
        self._error = None
        self._input_method = input_method
        self._set_state(TurnState.SENDING)

        options = CompletionOptions(
            input_method=input_method,
            history=prior,
            system_context=system_context or self._config.conversation.system_context,
            available_commands=self._dispatcher.to_prompt_text() if self._dispatcher else None,
            cancellation_token=token,
        )
        logger.info("Conversation turn started", turn=turn, input_method=input_method, history=len(prior))
        _TURNS_IN_FLIGHT.inc()

        completed = False
        chunks = self._client.stream(text, options)
        try:
            async for chunk in chunks:
                if token.cancelled:
                    break
                self._response = chunk.accumulated_text
                if chunk.is_final:
                    self._parsed = parse_response(self._response, complete=True)
                    self._append_history(Message(role="assistant", content=self._response))
                    completed = True
                    self._set_state(TurnState.COMPLETE, publish=False)
                    snapshot = self.snapshot()
                    self.on_update.publish(snapshot)
                    self.on_complete.publish(snapshot)
                    _TURNS_TOTAL.labels("complete").inc()
                    logger.info(
                        "Conversation turn complete",
                        turn=turn,
                        actions=len(self._parsed.actions),
                        has_card=self._parsed.card_header is not None,
                    )
                else:
                    self._parsed = parse_response(self._response)
                    self._set_state(TurnState.STREAMING, publish=False)
                    self.on_update.publish(self.snapshot())
        except Exception as exc:
            if token.cancelled:
                logger.debug("Ignoring error from cancelled turn", turn=turn)
            else:
                error = exc if isinstance(exc, CompletionError) else classify_error(exc)
                self._error = error
                self._set_state(TurnState.ERROR)
                self.on_error.publish(error)
                _TURNS_TOTAL.labels("error").inc()
                logger.warning("Conversation turn failed", turn=turn, error_type=error.error_type.value)
        finally:
            await chunks.aclose()
            _TURNS_IN_FLIGHT.dec()
            if self._token is token:
                self._token = None
            done.set()

        if token.cancelled:
            _TURNS_TOTAL.labels("cancelled").inc()
            logger.info("Conversation turn cancelled", turn=turn, reason=token.reason)
        elif completed and self._config.conversation.auto_execute_actions and self._parsed.actions:
            await self.dispatch_actions()

        return self.snapshot()

    def cancel_stream(self) -> None:
        """Cancel the in-flight turn; no assistant turn is recorded."""
        token = self._token
        if token is None:
            return
        token.cancel("cancelled by user")
        self._token = None
        self._set_state(TurnState.IDLE)

    def clear_response(self) -> None:
        self.cancel_stream()
        self._response = ""
        self._parsed = _EMPTY_PARSE
        self._error = None
        self._set_state(TurnState.IDLE, force=True)

    def clear_history(self) -> None:
        self.clear_response()
        self._history.clear()
        logger.info("Conversation history cleared")

    async def wait_idle(self) -> None:
        """Wait until the current turn (if any) has fully unwound."""
        done = self._turn_done
        if done is not None:
            await done.wait()

    # Actions --------------------------------------------------------------

    async def execute_action(self, action: ActionDescriptor) -> ActionResult:
        if self._dispatcher is None:
            return ActionResult.failed("No action dispatcher configured")
        result = await self._dispatcher.execute(action.command, dict(action.params or {}))
        self.on_action.publish(ActionOutcome(action=action, result=result))
        return result

    async def dispatch_actions(self) -> List[ActionResult]:
        """Execute every parsed action of the current response, in order."""
        if self._dispatcher is None:
            return []
        results = []
        for action in self._parsed.actions:
            results.append(await self.execute_action(action))
        return results

    # Internals ------------------------------------------------------------

    async def _cancel_in_flight(self, reason: str) -> None:
        token, done = self._token, self._turn_done
        if token is not None:
            token.cancel(reason)
            self._token = None
        if done is not None and not done.is_set():
            await done.wait()

    def _append_history(self, message: Message) -> None:
        self._history.append(message)
        if self._history_limit > 0 and len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

    def _set_state(self, state: TurnState, *, publish: bool = True, force: bool = False) -> None:
        changed = state is not self._state
        self._state = state
        if publish and (changed or force):
            self.on_update.publish(self.snapshot())


__all__ = ["ActionOutcome", "ConversationController", "TurnSnapshot", "TurnState"]
