"""Module entrypoint for `python -m agentbridge.cli`."""

from __future__ import annotations

from agentbridge.cli.main import run

if __name__ == "__main__":
    run()
