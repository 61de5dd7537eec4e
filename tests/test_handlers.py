from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from acp import RequestError
from acp.client.router import build_client_router
from acp.schema import EnvVariable, PermissionOption, ToolCallUpdate

from agentbridge.fs import FileAccessProxy
from agentbridge.handlers import ClientHandlers, dump
from agentbridge.permissions import PermissionMediator
from agentbridge.terminals import TerminalRegistry


def make_handlers(tmp_path: Path, *, mode: str = "ask", chooser=None) -> ClientHandlers:
    return ClientHandlers(
        terminals=TerminalRegistry(),
        permissions=PermissionMediator(mode, chooser),
        files=FileAccessProxy(tmp_path),
        default_cwd=lambda: str(tmp_path),
    )


@pytest.mark.asyncio
async def test_request_permission_wire_shape(tmp_path: Path) -> None:
    chooser = AsyncMock(return_value="reject")
    handlers = make_handlers(tmp_path, chooser=chooser)

    result = await handlers.request_permission(
        options=[
            PermissionOption(option_id="allow", name="Allow", kind="allow_once"),
            PermissionOption(option_id="reject", name="Reject", kind="reject_once"),
        ],
        session_id="s1",
        tool_call=ToolCallUpdate(tool_call_id="call-1", title="Delete build/"),
    )

    assert dump(result) == {"outcome": {"outcome": "selected", "optionId": "reject"}}
    options, title = chooser.await_args.args
    assert title == "Delete build/"
    assert [option.option_id for option in options] == ["allow", "reject"]


@pytest.mark.asyncio
async def test_file_requests(tmp_path: Path) -> None:
    handlers = make_handlers(tmp_path)
    target = tmp_path / "notes" / "a.txt"

    written = await handlers.write_text_file(content="1\n2\n3\n", path=str(target), session_id="s1")
    read = await handlers.read_text_file(path="notes/a.txt", session_id="s1", line=1, limit=1)

    assert dump(written) == {}
    assert read.content == "2"


@pytest.mark.asyncio
async def test_terminal_requests_round_trip(tmp_path: Path) -> None:
    handlers = make_handlers(tmp_path)

    created = await handlers.create_terminal(
        command=sys.executable,
        session_id="s1",
        args=["-c", "import os; print(os.getcwd(), os.environ['HANDLER_VAR'])"],
        cwd="",
        env=[EnvVariable(name="HANDLER_VAR", value="ok")],
        output_byte_limit=4096,
    )
    ids = {"session_id": "s1", "terminal_id": created.terminal_id}

    waited = await asyncio.wait_for(handlers.wait_for_terminal_exit(**ids), timeout=10)
    output = await handlers.terminal_output(**ids)

    assert dump(waited) == {"exitCode": 0}
    assert output["output"].strip() == f"{tmp_path} ok"
    assert output["truncated"] is False
    assert output["exitStatus"] == {"exitCode": 0}
    assert dump(await handlers.kill_terminal(**ids)) == {}
    assert dump(await handlers.release_terminal(**ids)) == {}
    assert dump(await handlers.release_terminal(**ids)) == {}


@pytest.mark.asyncio
async def test_running_terminal_reports_null_exit_status(tmp_path: Path) -> None:
    handlers = make_handlers(tmp_path)
    created = await handlers.create_terminal(
        command=sys.executable, session_id="s1", args=["-c", "import time; time.sleep(30)"]
    )

    output = await handlers.terminal_output(session_id="s1", terminal_id=created.terminal_id)

    assert output["exitStatus"] is None
    handlers.terminals.kill_all()


@pytest.mark.asyncio
async def test_unknown_terminal_is_invalid_params(tmp_path: Path) -> None:
    handlers = make_handlers(tmp_path)
    ids = {"session_id": "s1", "terminal_id": "terminal-9"}

    with pytest.raises(RequestError) as excinfo:
        await handlers.terminal_output(**ids)
    assert excinfo.value.code == -32602
    assert excinfo.value.data["terminalId"] == "terminal-9"

    with pytest.raises(RequestError):
        await handlers.wait_for_terminal_exit(**ids)
    assert dump(await handlers.kill_terminal(**ids)) == {}


@pytest.mark.asyncio
async def test_extension_methods_are_not_supported(tmp_path: Path) -> None:
    handlers = make_handlers(tmp_path)

    with pytest.raises(RequestError) as excinfo:
        await handlers.ext_method("vendor/thing", {})
    assert excinfo.value.code == -32601
    assert await handlers.ext_notification("vendor/thing", {}) is None


@pytest.mark.asyncio
async def test_router_validates_wire_params_and_calls_handlers(tmp_path: Path) -> None:
    router = build_client_router(make_handlers(tmp_path))
    (tmp_path / "a.txt").write_text("one\ntwo\n", encoding="utf-8")

    result = await router("fs/read_text_file", {"sessionId": "s1", "path": "a.txt", "line": 1}, False)
    assert dump(result) == {"content": "two\n"}

    created = await router(
        "terminal/create",
        {"sessionId": "s1", "command": sys.executable, "args": ["-c", "pass"], "cwd": "  "},
        False,
    )
    ids = {"sessionId": "s1", "terminalId": created.terminal_id}
    await asyncio.wait_for(router("terminal/wait_for_exit", ids, False), timeout=10)
    assert await router("terminal/release", ids, False) == {}

    with pytest.raises(RequestError) as excinfo:
        await router("fs/delete_everything", {}, False)
    assert excinfo.value.code == -32601
