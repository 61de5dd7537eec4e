from __future__ import annotations

import sys
from pathlib import Path

import pytest

from agentbridge.config import BridgeConfig
from agentbridge.log_utils import set_traffic_logging

FAKE_AGENT = Path(__file__).with_name("fake_agent.py")


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path_factory, monkeypatch):
    """Force tests to use a temporary HOME/XDG dirs to avoid permission issues."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / ".config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / ".local" / "share"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    monkeypatch.setattr(Path, "home", lambda: base)
    for name in (
        "AGENTBRIDGE_COMMAND",
        "AGENTBRIDGE_ARGS",
        "AGENTBRIDGE_CWD",
        "AGENTBRIDGE_PERMISSION_MODE",
        "AGENTBRIDGE_DEFAULT_MODEL",
        "AGENTBRIDGE_LOG_TRAFFIC",
        "AGENTBRIDGE_STDIO_BUFFER_LIMIT_BYTES",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    set_traffic_logging(False)


@pytest.fixture
def agent_config(tmp_path: Path):
    """Build a config that launches the scripted fake agent."""

    def _build(**overrides) -> BridgeConfig:
        values = {
            "command": sys.executable,
            "args": (str(FAKE_AGENT),),
            "cwd": str(tmp_path),
            "default_model": "",
        }
        values.update(overrides)
        return BridgeConfig(**values)

    return _build
