"""Client-side slash command registry and dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from agentbridge.cli.display import print_error, print_notice, print_status
from agentbridge.cli.state import CLIState
from agentbridge.coordinator import SessionCoordinator
from agentbridge.errors import BridgeError
from agentbridge.session_state import resolve_preferred_model

logger = logging.getLogger(__name__)

SlashHandler = Callable[[SessionCoordinator, CLIState, str], Awaitable[bool] | bool]


@dataclass
class SlashCommandDef:
    description: str
    hint: str
    handler: SlashHandler


SLASH_HANDLERS: dict[str, SlashCommandDef] = {}


def register_slash_command(name: str, description: str, hint: str) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a slash command."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, hint=hint, handler=func)
        return func

    return _decorator


@register_slash_command("/help", description="Show available slash commands.", hint="/help")
def _handle_help(coordinator: SessionCoordinator, _state: CLIState, _argument: str) -> bool:
    print("Available slash commands:")
    for entry in SLASH_HANDLERS.values():
        print(f"{entry.hint:<16} - {entry.description}")
    for command in coordinator.metadata.available_commands:
        name = f"/{command.name}"
        if name in SLASH_HANDLERS:
            continue
        print(f"{name:<16} - {command.description or command.hint or 'Handled by agent'}")
    return True


@register_slash_command("/status", description="Show connection, session, mode and model.", hint="/status")
def _handle_status(coordinator: SessionCoordinator, _state: CLIState, _argument: str) -> bool:
    print_status(coordinator.metadata, state=coordinator.state, cwd=coordinator.session_cwd, pid=coordinator.pid)
    return True


@register_slash_command("/mode", description="List modes, or switch to the given mode id.", hint="/mode [id]")
async def _handle_mode(coordinator: SessionCoordinator, _state: CLIState, argument: str) -> bool:
    metadata = coordinator.metadata
    if not argument:
        if not metadata.available_modes:
            print_notice("[agent did not advertise any modes]")
            return True
        for mode in metadata.available_modes:
            marker = "*" if mode.id == metadata.current_mode_id else " "
            print(f"{marker} {mode.id:<16} {mode.name}")
        return True
    await coordinator.set_mode(argument.split()[0])
    return True


@register_slash_command("/model", description="List models, or switch to the best match.", hint="/model [query]")
async def _handle_model(coordinator: SessionCoordinator, _state: CLIState, argument: str) -> bool:
    metadata = coordinator.metadata
    if not metadata.supports_models:
        print_notice("[agent does not support model selection]")
        return True
    if not argument:
        for model in metadata.available_models:
            marker = "*" if model.model_id == metadata.current_model_id else " "
            print(f"{marker} {model.model_id:<32} {model.name}")
        return True
    model_id = resolve_preferred_model(metadata.available_models, argument)
    if model_id is None:
        print_error(f"[no model matches {argument!r}]")
        return True
    await coordinator.set_model(model_id)
    return True


@register_slash_command("/new", description="Start a fresh session in the same directory.", hint="/new")
async def _handle_new(coordinator: SessionCoordinator, _state: CLIState, _argument: str) -> bool:
    session_id = await coordinator.new_session(coordinator.session_cwd)
    print_notice(f"[new session {session_id}]")
    return True


@register_slash_command("/exit", description="Exit the client.", hint="/exit")
@register_slash_command("/quit", description="Exit the client.", hint="/quit")
def _handle_exit(_coordinator: SessionCoordinator, _state: CLIState, _argument: str) -> bool:
    print("[exiting]")
    raise SystemExit(0)


async def handle_slash_command(line: str, coordinator: SessionCoordinator, state: CLIState) -> bool:
    """Dispatch client-side slash commands, returning True if handled.

    Unknown commands return False so they reach the agent as a prompt.
    """
    trimmed = line.strip()
    if not trimmed.startswith("/"):
        return False

    parts = trimmed.split(maxsplit=1)
    command = parts[0] if parts else ""
    argument = parts[1].strip() if len(parts) > 1 else ""

    entry = SLASH_HANDLERS.get(command)
    if entry is None:
        return False

    try:
        result = entry.handler(coordinator, state, argument)
        if asyncio.iscoroutine(result):
            return bool(await result)
        return bool(result)
    except SystemExit:
        raise
    except BridgeError as exc:
        print_error(f"[{command} failed: {exc}]")
        return True
    except Exception as exc:  # noqa: BLE001
        logger.error("Slash command failed (%s): %s", command, exc)
        print_error(f"[{command} failed: {exc}]")
        return True
