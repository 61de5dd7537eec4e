"""Filesystem access on behalf of the agent.

See: https://agentclientprotocol.com/protocol/file-system
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

_LINE_BREAK = re.compile(r"\r?\n")


def _write_bytes(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


class FileAccessProxy:
    """Read and write UTF-8 text files on the host.

    Relative paths resolve against ``base_dir`` (the session's working
    directory); the protocol normally sends absolute paths. Disk I/O runs in
    the default executor so large files do not stall update delivery.
    """

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else None

    def resolve(self, path_str: str) -> Path:
        path = Path(path_str).expanduser()
        if not path.is_absolute():
            path = (self.base_dir or Path.cwd()) / path
        return path

    async def read_text_file(self, path: str, line: int | None = None, limit: int | None = None) -> str:
        """Return the file content, or the ``[line, line + limit)`` window of it.

        Lines are 0-indexed. Without ``line`` and ``limit`` the content is
        returned unmodified, line endings included.
        """
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self.resolve(path).read_bytes)
        content = data.decode("utf-8")
        if line is None and limit is None:
            return content
        lines = _LINE_BREAK.split(content)
        start = max(0, line) if line is not None else 0
        count = max(0, limit) if limit is not None else len(lines)
        return "\n".join(lines[start : start + count])

    async def write_text_file(self, path: str, content: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_bytes, self.resolve(path), content.encode("utf-8"))
