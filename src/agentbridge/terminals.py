"""Agent-requested terminals running on the client host.

Implements the client side of https://agentclientprotocol.com/protocol/terminals:
each terminal is an OS process whose stdout and stderr are merged, in arrival
order, into one buffer that the agent polls or waits on.

Truncation keeps the *end* of the output. When the UTF-8 size of the buffer
exceeds ``output_byte_limit`` the cut point is moved forward past any UTF-8
continuation bytes, so the retained text always starts on a character
boundary and may be a few bytes shorter than the limit.

Exit is tracked from the process itself, not from its pipes: a background
grandchild holding stdout open does not delay ``exitStatus`` or
``wait_for_exit``. Output that arrives afterwards is still appended until
the pipes close or the terminal is released.
"""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import codecs
import contextlib
import itertools
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, Mapping, Sequence

from agentbridge.errors import NotFound, SpawnError
from agentbridge.log_utils import log_event

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65536
# after exit, how long to let the pipes drain before reporting the status
EXIT_DRAIN_SECONDS = 0.2


@dataclass(frozen=True)
class ExitStatus:
    exit_code: int | None
    signal: str | None = None


@dataclass(frozen=True)
class TerminalOutput:
    output: str
    truncated: bool
    exit_status: ExitStatus | None


def build_exit_status(returncode: int | None) -> ExitStatus | None:
    if returncode is None:
        return None
    if returncode < 0:
        sig = abs(returncode)
        try:
            sig_name = signal.Signals(sig).name
        except ValueError:
            sig_name = f"SIG{sig}"
        return ExitStatus(exit_code=None, signal=sig_name)
    return ExitStatus(exit_code=returncode, signal=None)


def truncate_front(encoded: bytes, limit: int) -> str:
    """Keep at most ``limit`` trailing bytes of UTF-8 ``encoded`` as text."""
    start = max(len(encoded) - limit, 0)
    while start < len(encoded) and (encoded[start] & 0xC0) == 0x80:
        start += 1
    return encoded[start:].decode("utf-8")


@dataclass
class ManagedTerminal:
    id: str
    proc: aio_subprocess.Process
    output_byte_limit: int | None = None
    output: str = ""
    truncated: bool = False
    exit_status: ExitStatus | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    pumps: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.proc.returncode is None

    def append(self, text: str) -> None:
        if not text:
            return
        self.output += text
        if self.output_byte_limit is None:
            return
        encoded = self.output.encode("utf-8")
        if len(encoded) > self.output_byte_limit:
            self.output = truncate_front(encoded, self.output_byte_limit)
            self.truncated = True

    def snapshot(self) -> TerminalOutput:
        return TerminalOutput(output=self.output, truncated=self.truncated, exit_status=self.exit_status)

    def kill(self, *, force: bool = False) -> bool:
        """Signal the whole process group; returns whether the leader was still running.

        The group is signalled even after the leader exited, so background
        children it left behind are stopped too.
        """
        was_running = self.running
        if os.name == "posix":
            sig = signal.SIGKILL if force else signal.SIGTERM
            try:
                os.killpg(self.proc.pid, sig)
                return was_running
            except ProcessLookupError:
                return was_running
            except PermissionError:
                pass
        if was_running:
            with contextlib.suppress(ProcessLookupError):
                if force:
                    self.proc.kill()
                else:
                    self.proc.terminate()
        return was_running

    def stop_reading(self) -> None:
        for pump in self.pumps:
            pump.cancel()


class TerminalRegistry:
    """Owning table of terminal id -> :class:`ManagedTerminal`."""

    def __init__(self) -> None:
        self._terminals: Dict[str, ManagedTerminal] = {}
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._terminals)

    def __contains__(self, terminal_id: object) -> bool:
        return terminal_id in self._terminals

    async def create(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        output_byte_limit: int | None = None,
    ) -> str:
        """Spawn ``command`` in its own process group and return its terminal id."""
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd or None,
                env=full_env,
                stdin=aio_subprocess.DEVNULL,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            raise SpawnError(f"Failed to start terminal command '{command}': {exc}") from exc

        terminal_id = f"terminal-{next(self._ids)}"
        terminal = ManagedTerminal(id=terminal_id, proc=proc, output_byte_limit=output_byte_limit)
        self._terminals[terminal_id] = terminal
        terminal.pumps = [
            self._spawn(self._pump(terminal, stream))
            for stream in (proc.stdout, proc.stderr)
            if stream is not None
        ]
        self._spawn(self._watch(terminal))
        log_event(logger, "terminal.created", terminal_id=terminal_id, command=command, pid=proc.pid)
        return terminal_id

    def get(self, terminal_id: str) -> ManagedTerminal:
        terminal = self._terminals.get(terminal_id)
        if terminal is None:
            raise NotFound(terminal_id)
        return terminal

    def output(self, terminal_id: str) -> TerminalOutput:
        return self.get(terminal_id).snapshot()

    async def wait_for_exit(self, terminal_id: str) -> ExitStatus:
        terminal = self.get(terminal_id)
        await terminal.exited.wait()
        return terminal.exit_status or ExitStatus(exit_code=None)

    def kill(self, terminal_id: str) -> None:
        """Send SIGTERM to the terminal's process group; unknown ids are a no-op."""
        terminal = self._terminals.get(terminal_id)
        if terminal is None:
            return
        if terminal.kill():
            log_event(logger, "terminal.killed", terminal_id=terminal_id)

    def release(self, terminal_id: str) -> None:
        """Kill the process group and forget the id; unknown ids are a no-op."""
        terminal = self._terminals.pop(terminal_id, None)
        if terminal is None:
            return
        terminal.kill(force=True)
        terminal.stop_reading()
        log_event(logger, "terminal.released", terminal_id=terminal_id)

    def kill_all(self) -> int:
        """Kill and drop every terminal; returns how many were registered."""
        terminals = list(self._terminals.values())
        self._terminals.clear()
        for terminal in terminals:
            terminal.kill(force=True)
            terminal.stop_reading()
        if terminals:
            log_event(logger, "terminal.kill_all", count=len(terminals))
        return len(terminals)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pump(self, terminal: ManagedTerminal, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            terminal.append(decoder.decode(chunk))
        terminal.append(decoder.decode(b"", final=True))

    async def _watch(self, terminal: ManagedTerminal) -> None:
        try:
            returncode = await terminal.proc.wait()
        except Exception as exc:  # noqa: BLE001
            terminal.append(f"\n{exc}")
            returncode = 1
        if terminal.pumps:
            # pipes held open by a background child must not delay the exit status
            done, _pending = await asyncio.wait(terminal.pumps, timeout=EXIT_DRAIN_SECONDS)
            for pump in done:
                if not pump.cancelled() and pump.exception() is not None:
                    logger.warning("Output reader for %s failed: %s", terminal.id, pump.exception())
        terminal.exit_status = build_exit_status(returncode)
        terminal.exited.set()
        log_event(
            logger,
            "terminal.exited",
            terminal_id=terminal.id,
            exit_code=terminal.exit_status.exit_code if terminal.exit_status else None,
            signal=terminal.exit_status.signal if terminal.exit_status else None,
        )
