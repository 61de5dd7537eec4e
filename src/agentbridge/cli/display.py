"""Rich rendering of session updates and status for the CLI."""

from __future__ import annotations

import difflib
from io import StringIO
from threading import Lock
from typing import Any, Iterable

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from agentbridge.cli.state import CLIState
from agentbridge.session_state import SessionMetadata

# prompt_toolkit owns stdout while the REPL runs, so render to a buffer first.
_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()


def _render_and_print(*args: Any, **kwargs: Any) -> bool:
    end = kwargs.get("end")
    if end is None:
        kwargs["end"] = "\n"
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")
        return output.endswith("\n")
    return False


def _render_text(text: str, style: str | None) -> Text:
    if "\x1b" in text:
        return Text.from_ansi(text)
    if style:
        return Text(text, style=style)
    return Text(text)


def print_notice(message: str) -> None:
    _render_and_print(Text(message, style="cyan"))


def print_error(message: str) -> None:
    _render_and_print(Text(message, style="red"))


def print_mode_update(mode: str) -> None:
    _render_and_print(Text(f"[mode -> {mode}]", style="magenta"))


def print_model_update(model: str) -> None:
    _render_and_print(Text(f"[model -> {model}]", style="magenta"))


def print_tool(status: str, message: str) -> None:
    normalized = status.lower()
    style = "green" if normalized == "completed" else "yellow" if normalized in {"in_progress", "pending", "start"} else "red"
    _render_and_print(Text(f"Tool[{status}]: {message}", style=style))


def print_agent_text(text: str) -> None:
    _render_and_print(_render_text(text, None), end="")


def print_thought(text: str) -> None:
    _render_and_print(_render_text(text, "#aaaaaa"), end="")


def print_diff(text: str) -> None:
    _render_and_print(Syntax(text, "diff", theme="ansi_dark", line_numbers=False))


def print_file_edit_diff(path: str, old_text: str | None, new_text: str) -> None:
    """Render a file edit as a unified diff."""
    old_lines = (old_text or "").splitlines(keepends=True)
    new_lines = new_text.splitlines(keepends=True)
    diff = "".join(
        difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=path or "before",
            tofile=path or "after",
            lineterm="",
        )
    )
    print_diff(diff if diff else f"No changes for {path or '<file>'}")


def print_plan(entries: Iterable[Any]) -> None:
    """Render plan entries with a status dot."""
    table = Table(show_header=False, box=None, border_style="cyan")
    table.add_column("", width=2, style="cyan")
    table.add_column("Item", style="white")
    status_styles = {
        "completed": "green",
        "in_progress": "orange1",
        "pending": "orange1",
    }
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        status = entry.get("status") or "pending"
        style = status_styles.get(status, "orange1")
        table.add_row(Text("•", style=style), str(entry.get("content") or "").strip())
    _render_and_print(table)


def describe_content(content: Any) -> str:
    if not isinstance(content, dict):
        return "<content>"
    kind = content.get("type")
    if kind == "text":
        return str(content.get("text") or "")
    if kind == "image":
        return "<image>"
    if kind == "audio":
        return "<audio>"
    if kind == "resource_link":
        return str(content.get("uri") or "<resource>")
    if kind == "resource":
        return "<resource>"
    return "<content>"


def _flush_line(state: CLIState) -> None:
    if state.pending_newline:
        print_formatted_text("")
        state.pending_newline = False


def render_update(update: dict[str, Any], state: CLIState) -> None:
    """Print one ``session/update`` payload (the ``update`` object)."""
    kind = update.get("sessionUpdate")
    if kind == "agent_message_chunk":
        print_agent_text(describe_content(update.get("content")))
        state.pending_newline = True
        return
    if kind == "agent_thought_chunk":
        if not state.show_thinking:
            return
        print_thought(describe_content(update.get("content")))
        state.pending_newline = True
        return
    if kind == "tool_call":
        _flush_line(state)
        print_tool(update.get("status") or "start", update.get("title") or update.get("toolCallId") or "")
        return
    if kind == "tool_call_update":
        _flush_line(state)
        for block in update.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "diff":
                print_file_edit_diff(block.get("path") or "", block.get("oldText"), block.get("newText") or "")
        status = update.get("status")
        if status:
            print_tool(status, update.get("title") or update.get("toolCallId") or "")
        return
    if kind == "plan":
        _flush_line(state)
        print_plan(update.get("entries") or [])
        return
    if kind == "current_mode_update":
        _flush_line(state)
        print_mode_update(str(update.get("currentModeId")))
        return
    if kind == "current_model_update":
        _flush_line(state)
        print_model_update(str(update.get("currentModelId")))


def render_status(metadata: SessionMetadata, *, state: str, cwd: str, pid: int | None) -> Table:
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Connection", state if pid is None else f"{state} (pid {pid})")
    table.add_row("Directory", cwd)
    table.add_row("Session", metadata.session_id or "<none>")
    table.add_row("Mode", metadata.current_mode_id or "<unknown>")
    if metadata.available_modes:
        table.add_row("Modes", ", ".join(mode.id for mode in metadata.available_modes))
    if metadata.supports_models:
        table.add_row("Model", metadata.current_model_id or "<unknown>")
    else:
        table.add_row("Model", "<not supported by agent>")
    if metadata.available_commands:
        table.add_row("Agent commands", ", ".join(f"/{cmd.name}" for cmd in metadata.available_commands))
    return table


def print_status(metadata: SessionMetadata, *, state: str, cwd: str, pid: int | None) -> None:
    _render_and_print(render_status(metadata, state=state, cwd=cwd, pid=pid))
