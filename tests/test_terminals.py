from __future__ import annotations

import asyncio
import os
import sys
from unittest.mock import Mock

import pytest

from agentbridge.errors import NotFound, SpawnError
from agentbridge.terminals import ManagedTerminal, TerminalRegistry, build_exit_status, truncate_front


def python_args(code: str) -> list[str]:
    return ["-c", code]


@pytest.mark.asyncio
async def test_terminal_lifecycle(tmp_path) -> None:
    registry = TerminalRegistry()
    terminal_id = await registry.create(
        sys.executable,
        python_args("import os, sys; print('out', os.getcwd()); print('err', file=sys.stderr)"),
        cwd=str(tmp_path),
    )
    assert terminal_id == "terminal-1"
    assert terminal_id in registry

    status = await asyncio.wait_for(registry.wait_for_exit(terminal_id), timeout=10)
    assert status.exit_code == 0
    assert status.signal is None

    snapshot = registry.output(terminal_id)
    assert f"out {tmp_path}" in snapshot.output
    assert "err" in snapshot.output
    assert snapshot.truncated is False
    assert snapshot.exit_status == status

    registry.release(terminal_id)
    assert terminal_id not in registry


@pytest.mark.asyncio
async def test_ids_are_unique_for_registry_lifetime() -> None:
    registry = TerminalRegistry()
    first = await registry.create(sys.executable, python_args("pass"))
    registry.release(first)
    second = await registry.create(sys.executable, python_args("pass"))
    assert (first, second) == ("terminal-1", "terminal-2")
    registry.kill_all()


@pytest.mark.asyncio
async def test_env_overlay_reaches_process() -> None:
    registry = TerminalRegistry()
    terminal_id = await registry.create(
        sys.executable,
        python_args("import os; print(os.environ['BRIDGE_TEST_VAR'])"),
        env={"BRIDGE_TEST_VAR": "overlay"},
    )
    await asyncio.wait_for(registry.wait_for_exit(terminal_id), timeout=10)
    assert registry.output(terminal_id).output.strip() == "overlay"


@pytest.mark.asyncio
async def test_output_truncation_keeps_tail_within_limit() -> None:
    registry = TerminalRegistry()
    terminal_id = await registry.create(
        sys.executable,
        python_args("import sys\nfor i in range(200): sys.stdout.write(f'line {i:03d}\\n')"),
        output_byte_limit=100,
    )
    await asyncio.wait_for(registry.wait_for_exit(terminal_id), timeout=10)

    snapshot = registry.output(terminal_id)
    assert len(snapshot.output.encode("utf-8")) <= 100
    assert snapshot.truncated is True
    assert snapshot.output.endswith("line 199\n")


@pytest.mark.asyncio
async def test_wait_after_exit_and_concurrent_waiters_agree() -> None:
    registry = TerminalRegistry()
    terminal_id = await registry.create(sys.executable, python_args("import sys; sys.exit(3)"))

    results = await asyncio.wait_for(
        asyncio.gather(*(registry.wait_for_exit(terminal_id) for _ in range(3))),
        timeout=10,
    )
    assert all(result == results[0] for result in results)
    assert results[0].exit_code == 3

    # already exited: returns immediately
    again = await asyncio.wait_for(registry.wait_for_exit(terminal_id), timeout=1)
    assert again == results[0]


@pytest.mark.asyncio
async def test_unknown_ids() -> None:
    registry = TerminalRegistry()

    registry.kill("terminal-42")
    registry.release("terminal-42")
    with pytest.raises(NotFound, match="terminal-42"):
        registry.output("terminal-42")
    with pytest.raises(NotFound):
        await registry.wait_for_exit("terminal-42")


@pytest.mark.asyncio
@pytest.mark.skipif(os.name != "posix", reason="signals are POSIX-only")
async def test_kill_terminates_running_process() -> None:
    registry = TerminalRegistry()
    terminal_id = await registry.create(sys.executable, python_args("import time; time.sleep(30)"))

    registry.kill(terminal_id)
    status = await asyncio.wait_for(registry.wait_for_exit(terminal_id), timeout=10)

    assert status.exit_code is None
    assert status.signal == "SIGTERM"
    # killing again after exit is a no-op
    registry.kill(terminal_id)
    assert terminal_id in registry


@pytest.mark.asyncio
@pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX-only")
async def test_exit_reported_while_background_child_keeps_output_open() -> None:
    registry = TerminalRegistry()
    terminal_id = await registry.create("sh", ["-c", "sleep 30 & echo started"])
    terminal = registry.get(terminal_id)

    status = await asyncio.wait_for(registry.wait_for_exit(terminal_id), timeout=2)

    snapshot = registry.output(terminal_id)
    assert status.exit_code == 0
    assert snapshot.exit_status == status
    assert "started" in snapshot.output
    assert not all(pump.done() for pump in terminal.pumps)

    # the leader is gone; the signal must still reach the background sleep
    registry.kill(terminal_id)
    await asyncio.wait_for(asyncio.gather(*terminal.pumps), timeout=5)
    registry.release(terminal_id)


@pytest.mark.asyncio
async def test_release_and_kill_all_stop_processes() -> None:
    registry = TerminalRegistry()
    first = await registry.create(sys.executable, python_args("import time; time.sleep(30)"))
    second = await registry.create(sys.executable, python_args("import time; time.sleep(30)"))
    first_terminal = registry.get(first)
    second_terminal = registry.get(second)

    registry.release(first)
    assert first not in registry
    await asyncio.wait_for(first_terminal.exited.wait(), timeout=10)

    assert registry.kill_all() == 1
    assert len(registry) == 0
    await asyncio.wait_for(second_terminal.exited.wait(), timeout=10)
    assert registry.kill_all() == 0


@pytest.mark.asyncio
async def test_spawn_failure_raises() -> None:
    registry = TerminalRegistry()
    with pytest.raises(SpawnError):
        await registry.create("/definitely/not/a/real/binary")
    assert len(registry) == 0


def test_truncation_flag_is_monotonic() -> None:
    terminal = ManagedTerminal(id="terminal-1", proc=Mock(returncode=None), output_byte_limit=8)
    terminal.append("0123456789")
    assert terminal.output == "23456789"
    assert terminal.truncated is True

    terminal.output = ""
    terminal.append("ab")
    assert terminal.output == "ab"
    assert terminal.truncated is True


def test_truncate_front_respects_character_boundaries() -> None:
    encoded = ("é" * 10).encode("utf-8")
    kept = truncate_front(encoded, 5)
    assert kept == "éé"
    assert len(kept.encode("utf-8")) <= 5


def test_build_exit_status() -> None:
    assert build_exit_status(None) is None
    assert build_exit_status(0).exit_code == 0
    status = build_exit_status(-9)
    assert status.exit_code is None
    assert status.signal == "SIGKILL"
