"""Command implementations for the CLI interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Callable, TextIO

from ..context import SessionContext
from ..history.storage import SQLiteKeyValueStore
from ..messages import CanonicalMessage, MessageKind, TextPayload
from ..presentation import NullPresenter
from ..session import ConversationController
from ..settings import AppSettings
from ..streaming.events import TurnUpdate
from ..transport.base import AgentTransport
from ..transport.http import HttpAgentTransport
from ..util.time import format_epoch


@dataclass
class Command:
    """Describe a CLI command and its argument handler."""

    func: Callable[[argparse.Namespace], None]
    help: str
    add_arguments: Callable[[argparse.ArgumentParser], None]


def format_message(message: CanonicalMessage) -> str:
    """Return a one-line rendering of *message*."""
    stamp = format_epoch(message.created_at)
    text = message.text.replace("\n", " ")
    payload = message.payload
    if isinstance(payload, TextPayload) and payload.interrupted:
        text += " [interrupted]"
    return f"{stamp} {message.kind.value}: {text}"


class TextPresenter:
    """Write conversation changes to text streams.

    Assistant text is echoed while it streams; other finalized messages are
    written once stored.  Status notices go to ``err``.
    """

    def __init__(self, out: TextIO | None = None, err: TextIO | None = None) -> None:
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self._echoed = 0

    def on_history_loaded(self, agent_id: str, messages: Sequence[CanonicalMessage]) -> None:
        for message in messages:
            self.out.write(format_message(message) + "\n")

    def on_older_history_loaded(
        self, agent_id: str, messages: Sequence[CanonicalMessage]
    ) -> None:
        self.on_history_loaded(agent_id, messages)

    def on_turn_update(self, update: TurnUpdate) -> None:
        if update.final:
            if self._echoed:
                self.out.write("\n")
            self._echoed = 0
            return
        if len(update.text) > self._echoed:
            self.out.write(update.text[self._echoed:])
            self._echoed = len(update.text)
            self.out.flush()

    def on_turn_finalized(
        self, agent_id: str, messages: Sequence[CanonicalMessage]
    ) -> None:
        for message in messages:
            if message.kind in (MessageKind.USER_TEXT, MessageKind.ASSISTANT_TEXT):
                continue
            self.out.write(format_message(message) + "\n")

    def on_status(self, agent_id: str | None, text: str) -> None:
        self.err.write(f"{text}\n")


def make_transport(settings: AppSettings) -> AgentTransport:
    """Return the transport used by CLI commands."""
    return HttpAgentTransport(settings.service)


def build_controller(args: argparse.Namespace) -> ConversationController:
    settings: AppSettings = getattr(args, "app_settings", None) or AppSettings()
    state_path = getattr(args, "state", None) or settings.history.state_path
    context = SessionContext(
        transport=make_transport(settings),
        storage=SQLiteKeyValueStore(state_path),
        settings=settings,
    )
    return ConversationController(context, TextPresenter())


def _run(args: argparse.Namespace, action: Callable[[ConversationController], Any]) -> Any:
    async def runner() -> Any:
        controller = build_controller(args)
        try:
            return await action(controller)
        finally:
            await controller.close()

    return asyncio.run(runner())


# ----------------------------------------------------------------------
def cmd_agents(args: argparse.Namespace) -> None:
    """List agents known to the service."""

    agents = _run(args, lambda controller: controller.list_agents())
    for agent in agents:
        if getattr(args, "json", False):
            sys.stdout.write(json.dumps(agent, ensure_ascii=False) + "\n")
            continue
        name = agent.get("name") or ""
        sys.stdout.write(f"{agent.get('id')} {name}".rstrip() + "\n")


def add_agents_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--json", action="store_true", help="print raw agent records")


def cmd_history(args: argparse.Namespace) -> None:
    """Print the cached conversation, syncing what is missing."""

    async def action(controller: ConversationController) -> None:
        await controller.open(args.agent, force_refresh=args.refresh)
        if args.older:
            await controller.load_older()

    _run(args, action)


def add_history_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("agent", help="agent id")
    p.add_argument("--refresh", action="store_true", help="discard the cache and fetch again")
    p.add_argument("--older", action="store_true", help="also load the preceding page")


def cmd_send(args: argparse.Namespace) -> None:
    """Send a message and stream the reply."""

    async def action(controller: ConversationController) -> None:
        presenter = controller.presenter
        controller.presenter = NullPresenter()
        await controller.open(args.agent)
        controller.presenter = presenter
        await controller.submit(args.text)

    _run(args, action)


def add_send_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("agent", help="agent id")
    p.add_argument("text", help="message text")


def cmd_clear(args: argparse.Namespace) -> None:
    """Forget cached history of one agent or of all agents."""

    controller = build_controller(args)
    if args.agent:
        controller.history.clear(args.agent)
        sys.stdout.write(f"{args.agent}\n")
    else:
        controller.history.clear_all()
        sys.stdout.write("all\n")


def add_clear_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("agent", nargs="?", help="agent id; omit to clear every agent")


COMMANDS: dict[str, Command] = {
    "agents": Command(cmd_agents, "list agents", add_agents_arguments),
    "history": Command(cmd_history, "show conversation history", add_history_arguments),
    "send": Command(cmd_send, "send a message and stream the reply", add_send_arguments),
    "clear": Command(cmd_clear, "clear cached history", add_clear_arguments),
}
