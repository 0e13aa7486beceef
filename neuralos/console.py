"""
Interactive text console for the session engine.

Reads utterances from stdin, streams the model's reply through the
conversation controller and prints display text, the card header and any
actions. Slash commands:

    /voice <text>   send as if spoken (voice prompt addendum)
    /run            execute the actions of the last reply
    /stats          token usage for this session
    /clear          start a new conversation
    /key <key>      store an Anthropic API key
    /model <name>   switch model
    /quit           exit
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

import structlog
from prometheus_client import start_http_server

from .ai.client import CompletionClient
from .config import SUPPORTED_MODELS, AppConfig, load_config
from .config.settings_store import InvalidApiKeyError, SettingsStore
from .core.conversation import ActionOutcome, ConversationController, TurnSnapshot, TurnState
from .logging_config import configure_logging
from .pipelines.anthropic import AnthropicTransport
from .tools.notifications import LogNotifier, notification_actions
from .tools.registry import ActionRegistry

logger = structlog.get_logger(__name__)

PROMPT = "neuralos> "


class Console:
    def __init__(self, config: AppConfig, *, out=None):
        self._config = config
        self._out = out or sys.stdout
        self.settings = SettingsStore(config, path=config.settings_path)
        self.transport = AnthropicTransport(config.llm)
        self.client = CompletionClient(self.transport, config.llm, self.settings)
        self.notifier = LogNotifier(on_fire=self._print_notification)
        self.registry = ActionRegistry()
        self.registry.register_many(notification_actions(self.notifier))
        self.controller = ConversationController(self.client, config, dispatcher=self.registry)

        self._printed = 0
        self.controller.on_update.subscribe(self._render_update)
        self.controller.on_action.subscribe(self._render_action)

    def write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _print_notification(self, title: str, body: str) -> None:
        self.write(f"\n[notification] {title}: {body}\n{PROMPT}")

    def _render_update(self, snapshot: TurnSnapshot) -> None:
        if snapshot.state is TurnState.STREAMING:
            text = snapshot.display_text
            if len(text) > self._printed:
                self.write(text[self._printed :])
                self._printed = len(text)
        elif snapshot.state is TurnState.COMPLETE:
            remainder = snapshot.display_text[self._printed :]
            self.write(remainder + "\n")
            if snapshot.card_header:
                self.write(f"[card] {snapshot.card_header.title}\n")
            for index, action in enumerate(snapshot.actions, 1):
                self.write(f"  ({index}) {action.label} -> {action.command} {action.params or ''}\n")
        elif snapshot.state is TurnState.ERROR and snapshot.error is not None:
            self.write(f"\n[error] {snapshot.error.message}\n")

    def _render_action(self, outcome: ActionOutcome) -> None:
        status = "ok" if outcome.result.success else "failed"
        self.write(f"  [{status}] {outcome.result.message}\n")

    async def handle(self, line: str) -> bool:
        """Process one input line; ``False`` ends the session."""
        line = line.strip()
        if not line:
            return True
        if not line.startswith("/"):
            await self._send(line, "text")
            return True

        command, _, argument = line.partition(" ")
        argument = argument.strip()
        if command in ("/quit", "/exit"):
            return False
        if command == "/voice":
            await self._send(argument, "voice")
        elif command == "/run":
            if not self.controller.actions:
                self.write("No actions to run.\n")
            await self.controller.dispatch_actions()
        elif command == "/stats":
            stats = self.client.session_stats
            self.write(
                f"requests={stats.request_count} input_tokens={stats.input_tokens} "
                f"output_tokens={stats.output_tokens}\n"
            )
        elif command == "/clear":
            self.controller.clear_history()
            self.client.reset_session_stats()
            self.write("New conversation.\n")
        elif command == "/key":
            try:
                self.settings.set_api_key(argument)
                self.write("API key saved.\n")
            except InvalidApiKeyError as exc:
                self.write(f"{exc}\n")
        elif command == "/model":
            if argument not in SUPPORTED_MODELS:
                self.write(f"Supported models: {', '.join(SUPPORTED_MODELS)}\n")
            else:
                self.settings.set_model(argument)
                self.write(f"Model set to {argument}.\n")
        else:
            self.write(f"Unknown command {command}\n")
        return True

    async def _send(self, text: str, input_method: str) -> None:
        self._printed = 0
        await self.controller.send_message(text, input_method=input_method)  # type: ignore[arg-type]

    async def close(self) -> None:
        self.controller.cancel_stream()
        await self.notifier.cancel_all()
        await self.transport.stop()


async def _read_line() -> Optional[str]:
    try:
        return await asyncio.to_thread(input, PROMPT)
    except EOFError:
        return None


async def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="NeuralOS text console")
    parser.add_argument("--config", default=None, help="Path to neuralos YAML config")
    parser.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
    parser.add_argument("--stream", action="store_true", help="Request incremental (SSE) responses")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.stream:
        config.llm.stream = True
    configure_logging(config.logging.level, json_output=config.logging.json_output)
    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info("Metrics endpoint started", port=args.metrics_port)

    console = Console(config)
    if not console.settings.has_api_key():
        console.write("No API key configured. Use /key sk-ant-... or set ANTHROPIC_API_KEY.\n")

    try:
        while True:
            line = await _read_line()
            if line is None or not await console.handle(line):
                break
    finally:
        await console.close()
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


__all__ = ["Console", "main", "run"]
