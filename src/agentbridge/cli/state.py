"""Lightweight UI state shared across CLI components."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class CLIState:
    pending_newline: bool = False
    show_thinking: bool = True
    cancel_requested: bool = False
    last_stop_reason: str | None = None
