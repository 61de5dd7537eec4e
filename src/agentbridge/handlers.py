"""Inbound ACP calls serviced on the client host.

:class:`ClientHandlers` is the ``acp.Client`` the SDK router dispatches to.
The router validates wire params with the schema request models before a
method runs; a ``ValidationError`` becomes -32602, a ``RequestError`` is sent
as-is and anything else becomes -32603, for that call only.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from acp import Client, RequestError
from acp.schema import (
    CreateTerminalResponse,
    EnvVariable,
    KillTerminalCommandResponse,
    PermissionOption,
    ReadTextFileResponse,
    ReleaseTerminalResponse,
    RequestPermissionResponse,
    TerminalExitStatus,
    TerminalOutputResponse,
    ToolCallUpdate,
    WaitForTerminalExitResponse,
    WriteTextFileResponse,
)
from pydantic import BaseModel

from agentbridge.errors import NotFound
from agentbridge.fs import FileAccessProxy
from agentbridge.log_utils import log_context, log_event
from agentbridge.permissions import PermissionMediator
from agentbridge.terminals import TerminalRegistry

logger = logging.getLogger(__name__)


def dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True)


def unknown_terminal(exc: NotFound) -> RequestError:
    return RequestError.invalid_params({"terminalId": exc.terminal_id, "details": str(exc)})


class ClientHandlers(Client):
    """Client side of the ACP method set: permissions, files and terminals."""

    def __init__(
        self,
        *,
        terminals: TerminalRegistry,
        permissions: PermissionMediator,
        files: FileAccessProxy,
        default_cwd: Callable[[], str],
    ) -> None:
        self.terminals = terminals
        self.permissions = permissions
        self.files = files
        self._default_cwd = default_cwd

    async def session_update(self, session_id: str, update: Any, **_: Any) -> None:
        """Updates are applied from the protocol bridge's stream observer, in arrival order."""
        return None

    async def request_permission(
        self,
        options: list[PermissionOption],
        session_id: str,
        tool_call: ToolCallUpdate,
        **_: Any,
    ) -> RequestPermissionResponse:
        """Prompt Turn permission flow: policy first, then the chooser."""
        with log_context(session_id=session_id):
            return await self.permissions.request_permission(tool_call, options)

    async def read_text_file(
        self,
        path: str,
        session_id: str,
        limit: int | None = None,
        line: int | None = None,
        **_: Any,
    ) -> ReadTextFileResponse:
        content = await self.files.read_text_file(path, line=line, limit=limit)
        return ReadTextFileResponse(content=content)

    async def write_text_file(self, content: str, path: str, session_id: str, **_: Any) -> WriteTextFileResponse:
        await self.files.write_text_file(path, content)
        return WriteTextFileResponse()

    async def create_terminal(
        self,
        command: str,
        session_id: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        env: list[EnvVariable] | None = None,
        output_byte_limit: int | None = None,
        **_: Any,
    ) -> CreateTerminalResponse:
        overlay = {ev.name: ev.value for ev in env or []}
        with log_context(session_id=session_id):
            terminal_id = await self.terminals.create(
                command,
                args or [],
                cwd=(cwd or "").strip() or self._default_cwd(),
                env=overlay,
                output_byte_limit=output_byte_limit,
            )
        return CreateTerminalResponse(terminal_id=terminal_id)

    async def terminal_output(self, session_id: str, terminal_id: str, **_: Any) -> dict[str, Any]:
        try:
            snapshot = self.terminals.output(terminal_id)
        except NotFound as exc:
            raise unknown_terminal(exc) from exc
        exit_status = None
        if snapshot.exit_status is not None:
            exit_status = TerminalExitStatus(
                exit_code=snapshot.exit_status.exit_code,
                signal=snapshot.exit_status.signal,
            )
        payload = dump(
            TerminalOutputResponse(output=snapshot.output, truncated=snapshot.truncated, exit_status=exit_status)
        )
        # a running terminal reports an explicit null
        payload.setdefault("exitStatus", None)
        return payload

    async def wait_for_terminal_exit(
        self, session_id: str, terminal_id: str, **_: Any
    ) -> WaitForTerminalExitResponse:
        try:
            status = await self.terminals.wait_for_exit(terminal_id)
        except NotFound as exc:
            raise unknown_terminal(exc) from exc
        return WaitForTerminalExitResponse(exit_code=status.exit_code, signal=status.signal)

    async def kill_terminal(self, session_id: str, terminal_id: str, **_: Any) -> KillTerminalCommandResponse:
        self.terminals.kill(terminal_id)
        return KillTerminalCommandResponse()

    async def release_terminal(self, session_id: str, terminal_id: str, **_: Any) -> ReleaseTerminalResponse:
        self.terminals.release(terminal_id)
        return ReleaseTerminalResponse()

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        raise RequestError.method_not_found(f"_{method}")

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        log_event(logger, "protocol.ext_notification.ignored", level=logging.DEBUG, method=method)
