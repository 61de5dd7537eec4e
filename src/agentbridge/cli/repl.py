"""Interactive REPL loop and the permission chooser for the CLI."""

from __future__ import annotations

import logging
import sys
from typing import Sequence

from acp import RequestError
from acp.schema import PermissionOption
from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore

from agentbridge.cli.display import print_error, print_notice
from agentbridge.cli.slash import handle_slash_command
from agentbridge.cli.state import CLIState
from agentbridge.coordinator import SessionCoordinator
from agentbridge.errors import BridgeError, ConnectionClosed

logger = logging.getLogger(__name__)

CANCEL_TOKEN = "__CANCEL__"


def parse_choice(raw: str, options: Sequence[PermissionOption]) -> str | None:
    """Map a typed answer (1-based number or option id) to an option id."""
    choice = raw.strip()
    if choice.isdigit() and 1 <= int(choice) <= len(options):
        return options[int(choice) - 1].option_id
    for option in options:
        if option.option_id == choice:
            return option.option_id
    return None


def make_permission_chooser(state: CLIState):
    """Build the ``choose(options, title)`` callback used in ``ask`` mode."""
    session: PromptSession = PromptSession()

    async def choose(options: Sequence[PermissionOption], title: str) -> str | None:
        if state.cancel_requested:
            return None
        if state.pending_newline:
            print()
            state.pending_newline = False
        print(f"[permission] {title}")
        for idx, option in enumerate(options, start=1):
            print(f"{idx}) {option.name} ({option.kind})")
        try:
            raw = await session.prompt_async("Permission choice (number, empty to reject): ")
        except (EOFError, KeyboardInterrupt):
            return None
        return parse_choice(raw, options)

    return choose


def _prompt_label(coordinator: SessionCoordinator) -> str:
    metadata = coordinator.metadata
    mode = metadata.current_mode_id or "-"
    model = metadata.current_model_id or "-"
    return f"{mode}|{model}> "


async def interactive_loop(coordinator: SessionCoordinator, state: CLIState) -> None:
    """Read lines and drive one ``session/prompt`` turn per line until EOF."""
    kb = KeyBindings()

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=CANCEL_TOKEN)

    session: PromptSession = PromptSession(key_bindings=kb)

    while coordinator.connected:
        try:
            if state.pending_newline:
                print()
                state.pending_newline = False
            line = await session.prompt_async(_prompt_label(coordinator))
        except EOFError:
            break
        except KeyboardInterrupt:
            print("", file=sys.stderr)
            continue

        if line == CANCEL_TOKEN:
            if coordinator.session_id is not None:
                state.cancel_requested = True
                await coordinator.cancel()
                print_notice("[cancelled]")
            continue
        if not line.strip():
            continue

        if line.startswith("/") and await handle_slash_command(line, coordinator, state):
            continue

        state.cancel_requested = False
        try:
            state.last_stop_reason = await coordinator.prompt(line)
        except ConnectionClosed as exc:
            print_error(f"[connection closed: {exc}]")
            break
        except (BridgeError, RequestError) as exc:
            logger.error("Prompt failed: %s", exc)
            print_error(f"[prompt failed: {exc}]")
            continue
        if state.last_stop_reason not in (None, "end_turn"):
            if state.pending_newline:
                print()
                state.pending_newline = False
            print_notice(f"[stopped: {state.last_stop_reason}]")
