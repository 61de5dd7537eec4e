"""Agent subprocess launch and supervision."""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import contextlib
import logging
from typing import Any, Coroutine

from agentbridge.config import DEFAULT_STDIO_BUFFER_LIMIT_BYTES, ProcessConfig
from agentbridge.errors import SpawnError
from agentbridge.events import EventEmitter
from agentbridge.log_utils import log_event, log_traffic

logger = logging.getLogger(__name__)
agent_logger = logging.getLogger("agentbridge.agent")

STOP_TIMEOUT_S = 5.0


class ProcessSupervisor:
    """Own one agent process and report when it goes away.

    ``exited`` fires with the return code once the process terminates;
    ``failed`` fires if supervising it raised. Subscribers must tolerate both
    firing for the same process.
    """

    def __init__(self, *, stdio_buffer_limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES) -> None:
        self._stdio_buffer_limit = stdio_buffer_limit
        self._proc: aio_subprocess.Process | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self.exited: EventEmitter[int | None] = EventEmitter("process.exited")
        self.failed: EventEmitter[BaseException] = EventEmitter("process.failed")

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def stdin(self) -> asyncio.StreamWriter:
        if self._proc is None or self._proc.stdin is None:
            raise SpawnError("Agent process stdio is not available")
        return self._proc.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        if self._proc is None or self._proc.stdout is None:
            raise SpawnError("Agent process stdio is not available")
        return self._proc.stdout

    async def start(self, config: ProcessConfig) -> None:
        """Launch the agent; raises :class:`SpawnError` if it cannot start."""
        command = (config.command or "").strip()
        if not command:
            raise SpawnError("Agent command is empty; configure 'command'")
        if self.running:
            raise SpawnError("Agent process is already running")

        log_event(logger, "agent.spawn", command=command, args=list(config.args), cwd=config.cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *config.args,
                cwd=config.cwd or None,
                env=dict(config.env) if config.env is not None else None,
                stdin=aio_subprocess.PIPE,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                limit=self._stdio_buffer_limit,
            )
        except (OSError, ValueError) as exc:
            raise SpawnError(f"Failed to start agent '{command}': {exc}") from exc

        if proc.stdin is None or proc.stdout is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise SpawnError("Agent process stdio is not available")

        self._proc = proc
        log_event(logger, "agent.started", pid=proc.pid)
        if proc.stderr is not None:
            self._spawn(self._pump_stderr(proc.stderr))
        self._spawn(self._watch(proc))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        pending = ""
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = pending.split("\n")
            for line in lines:
                self._log_stderr(line)
        if pending:
            self._log_stderr(pending)

    @staticmethod
    def _log_stderr(line: str) -> None:
        text = line.rstrip()
        if not text:
            return
        log_traffic("stderr", text)
        agent_logger.debug(text)

    async def _watch(self, proc: aio_subprocess.Process) -> None:
        try:
            returncode = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Agent process error: %s", exc, exc_info=True)
            self.failed.emit(exc)
            return
        log_event(logger, "agent.exited", pid=proc.pid, returncode=returncode)
        self.exited.emit(returncode)

    async def stop(self) -> None:
        """Best-effort kill; a no-op when nothing is running."""
        proc = self._proc
        if proc is None:
            return
        if proc.stdin is not None:
            with contextlib.suppress(Exception):
                proc.stdin.close()
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            with contextlib.suppress(asyncio.TimeoutError, ProcessLookupError):
                await asyncio.wait_for(proc.wait(), timeout=STOP_TIMEOUT_S)
