"""Answer ``session/request_permission`` calls from the agent."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from acp.schema import AllowedOutcome, DeniedOutcome, PermissionOption, RequestPermissionResponse

from agentbridge.config import normalize_permission_mode
from agentbridge.log_utils import log_event

logger = logging.getLogger(__name__)

# choose(options, title) -> selected option id, or None to cancel
Chooser = Callable[[Sequence[PermissionOption], str], Awaitable[str | None]]

AUTO_ALLOW_KINDS = ("allow_always", "allow_once")


def selected(option_id: str) -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=AllowedOutcome(option_id=option_id, outcome="selected"))


def cancelled() -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))


def find_auto_allow(options: Sequence[PermissionOption]) -> PermissionOption | None:
    """Prefer an ``allow_always`` option, then ``allow_once``."""
    for kind in AUTO_ALLOW_KINDS:
        for option in options:
            if option.kind == kind:
                return option
    return None


def tool_call_title(tool_call: Any) -> str:
    title = getattr(tool_call, "title", None)
    if title is None and isinstance(tool_call, dict):
        title = tool_call.get("title")
    return title or "Permission request"


class PermissionMediator:
    """Apply the permission policy, delegating to ``chooser`` when asking."""

    def __init__(self, mode: str = "ask", chooser: Chooser | None = None) -> None:
        self.mode = normalize_permission_mode(mode)
        self.chooser = chooser

    async def request_permission(
        self, tool_call: Any, options: Sequence[PermissionOption]
    ) -> RequestPermissionResponse:
        title = tool_call_title(tool_call)
        if self.mode == "allow_all":
            option = find_auto_allow(options)
            if option is not None:
                log_event(logger, "permission.auto_allowed", title=title, option_id=option.option_id)
                return selected(option.option_id)

        if self.chooser is None:
            log_event(logger, "permission.no_chooser", level=logging.WARNING, title=title)
            return cancelled()

        try:
            option_id = await self.chooser(options, title)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Permission chooser failed for %s", title)
            return cancelled()

        valid_ids = {option.option_id for option in options}
        if option_id is None or option_id not in valid_ids:
            log_event(logger, "permission.cancelled", title=title)
            return cancelled()
        log_event(logger, "permission.selected", title=title, option_id=option_id)
        return selected(option_id)
