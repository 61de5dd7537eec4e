"""Command-line entrypoint: connect to an agent and run the REPL."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from typing import Any

from acp import RequestError

from agentbridge.cli.display import print_error, print_notice, render_update
from agentbridge.cli.repl import interactive_loop, make_permission_chooser
from agentbridge.cli.state import CLIState
from agentbridge.config import BridgeConfig, load_config, normalize_permission_mode
from agentbridge.coordinator import ConnectionState, SessionCoordinator
from agentbridge.errors import BridgeError, ConfigError
from agentbridge.log_utils import build_log_config, configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentbridge",
        description="Run an ACP agent subprocess and chat with it from the terminal.",
    )
    parser.add_argument("--config", type=str, help="Path to a JSON config file.")
    parser.add_argument("--cwd", type=str, help="Workspace directory for the agent and its session.")
    parser.add_argument("--permission-mode", type=str, help="Permission policy: ask or allow_all.")
    parser.add_argument("--model", type=str, help="Preferred model (matched against model ids and names).")
    parser.add_argument("--log-traffic", action="store_true", help="Log every protocol frame to the log file.")
    parser.add_argument("agent_command", nargs="?", help="Agent executable (default from config).")
    parser.add_argument("agent_args", nargs=argparse.REMAINDER, help="Arguments for the agent.")
    return parser


def apply_arguments(config: BridgeConfig, args: argparse.Namespace) -> BridgeConfig:
    """Layer command-line flags over the loaded configuration."""
    updates: dict[str, Any] = {}
    if args.cwd:
        updates["cwd"] = os.path.abspath(args.cwd)
    if args.permission_mode:
        updates["permission_mode"] = normalize_permission_mode(args.permission_mode)
    if args.model is not None:
        updates["default_model"] = args.model.strip()
    if args.log_traffic:
        updates["log_traffic"] = True
    if args.agent_command:
        updates["command"] = args.agent_command
        updates["args"] = tuple(args.agent_args)
    return replace(config, **updates)


async def run_cli(config: BridgeConfig) -> int:
    state = CLIState()
    coordinator = SessionCoordinator(config, chooser=make_permission_chooser(state))
    coordinator.on_session_update.subscribe(lambda params: render_update(params["update"], state))

    def _on_state(new_state: ConnectionState) -> None:
        if new_state == "disconnected":
            print_notice("[agent disconnected]")

    try:
        await coordinator.connect()
        session_id = await coordinator.new_session()
    except (BridgeError, RequestError) as exc:
        logger.error("Failed to start agent session: %s", exc)
        print_error(f"Failed to connect to agent '{config.command}': {exc}")
        await coordinator.disconnect()
        return 1

    coordinator.on_state_change.subscribe(_on_state)
    agent_name = coordinator.agent_info.get("title") or coordinator.agent_info.get("name") or config.command
    print_notice(f"Connected to {agent_name} (session {session_id}). Send /help for help, Esc to cancel a turn.")
    try:
        await interactive_loop(coordinator, state)
    finally:
        await coordinator.disconnect()
    return 0


async def main(argv: list[str]) -> int:
    args = build_parser().parse_args(argv[1:])
    workspace = os.path.abspath(args.cwd or os.getcwd())
    try:
        config = apply_arguments(load_config(args.config, workspace_folder=workspace), args)
    except ConfigError as exc:
        print(f"agentbridge: {exc}", file=sys.stderr)
        return 1

    configure_logging(build_log_config(traffic=True if config.log_traffic else None))
    logger.info("Starting agentbridge CLI for %s", config.command)
    return await run_cli(config)


def run() -> None:
    """Console-script entrypoint."""
    try:
        raise SystemExit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        raise SystemExit(130)
