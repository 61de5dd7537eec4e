"""Bridge configuration: defaults, JSON config file, .env and environment.

Precedence, lowest first: built-in defaults, the JSON config file, then
``AGENTBRIDGE_*`` environment variables (``.env`` files are loaded into the
environment first without overriding variables that are already set).
"""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv

from agentbridge.errors import ConfigError
from agentbridge.log_utils import parse_bool, parse_int
from agentbridge.paths import config_dir

WORKSPACE_PLACEHOLDER = "${workspaceFolder}"
DEFAULT_COMMAND = "opencode"
DEFAULT_ARGS: tuple[str, ...] = ("acp",)
DEFAULT_MODEL_QUERY = "opencode"
DEFAULT_STDIO_BUFFER_LIMIT_BYTES = 50 * 1024 * 1024
_MIN_STDIO_BUFFER_LIMIT_BYTES = 64 * 1024

PERMISSION_MODES = {"ask": "ask", "allow_all": "allow_all", "allow-all": "allow_all", "allowall": "allow_all"}


def normalize_permission_mode(value: str | None) -> str:
    """Map accepted spellings (``allowAll``, ``allow-all``...) to ``ask``/``allow_all``."""
    if not value:
        return "ask"
    mode = PERMISSION_MODES.get(value.strip().lower())
    if mode is None:
        raise ConfigError(f"Unknown permission mode: {value!r} (expected 'ask' or 'allow_all')")
    return mode


def clamp_buffer_limit(value: int) -> int:
    return max(value, _MIN_STDIO_BUFFER_LIMIT_BYTES)


@dataclass(frozen=True)
class ProcessConfig:
    """Fully resolved launch parameters for one process."""

    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: Mapping[str, str] | None = None


@dataclass(frozen=True)
class BridgeConfig:
    command: str = DEFAULT_COMMAND
    args: tuple[str, ...] = DEFAULT_ARGS
    cwd: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    permission_mode: str = "ask"
    default_model: str = DEFAULT_MODEL_QUERY
    log_traffic: bool = False
    stdio_buffer_limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    workspace_folder: str | None = None

    def interpolate(self, value: str) -> str:
        return value.replace(WORKSPACE_PLACEHOLDER, self.workspace_folder or "")

    def resolve_cwd(self) -> str:
        """Configured cwd (interpolated), else the workspace folder, else the process cwd."""
        configured = self.cwd.strip()
        if configured:
            return self.interpolate(configured)
        return self.workspace_folder or os.getcwd()

    def resolve_env(self) -> dict[str, str]:
        env = dict(os.environ)
        for key, value in self.env.items():
            env[key] = self.interpolate(value)
        return env

    def process_config(self) -> ProcessConfig:
        return ProcessConfig(
            command=self.command.strip(),
            args=tuple(self.args),
            cwd=self.resolve_cwd(),
            env=self.resolve_env(),
        )


def default_config_path() -> Path:
    return config_dir() / "config.json"


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def _from_mapping(base: BridgeConfig, data: Mapping[str, Any]) -> BridgeConfig:
    updates: dict[str, Any] = {}
    if isinstance(data.get("command"), str):
        updates["command"] = data["command"]
    if "args" in data:
        raw_args = data["args"]
        if isinstance(raw_args, list):
            updates["args"] = tuple(arg for arg in raw_args if isinstance(arg, str))
        elif isinstance(raw_args, str):
            updates["args"] = tuple(shlex.split(raw_args))
    if isinstance(data.get("cwd"), str):
        updates["cwd"] = data["cwd"]
    if isinstance(data.get("env"), dict):
        # non-string values are ignored, matching how editors store env maps
        updates["env"] = {str(k): v for k, v in data["env"].items() if isinstance(v, str)}
    mode = data.get("permissionMode", data.get("permission_mode"))
    if isinstance(mode, str):
        updates["permission_mode"] = normalize_permission_mode(mode)
    model = data.get("defaultModel", data.get("default_model"))
    if isinstance(model, str):
        updates["default_model"] = model.strip()
    traffic = data.get("logTraffic", data.get("log_traffic"))
    if isinstance(traffic, bool):
        updates["log_traffic"] = traffic
    limit = data.get("stdioBufferLimit", data.get("stdio_buffer_limit"))
    if isinstance(limit, int):
        updates["stdio_buffer_limit"] = clamp_buffer_limit(limit)
    return replace(base, **updates)


def _from_environment(base: BridgeConfig) -> BridgeConfig:
    updates: dict[str, Any] = {}
    command = os.getenv("AGENTBRIDGE_COMMAND")
    if command:
        updates["command"] = command
    args = os.getenv("AGENTBRIDGE_ARGS")
    if args is not None:
        updates["args"] = tuple(shlex.split(args))
    cwd = os.getenv("AGENTBRIDGE_CWD")
    if cwd is not None:
        updates["cwd"] = cwd
    mode = os.getenv("AGENTBRIDGE_PERMISSION_MODE")
    if mode:
        updates["permission_mode"] = normalize_permission_mode(mode)
    model = os.getenv("AGENTBRIDGE_DEFAULT_MODEL")
    if model is not None:
        updates["default_model"] = model.strip()
    traffic = os.getenv("AGENTBRIDGE_LOG_TRAFFIC")
    if traffic is not None:
        updates["log_traffic"] = parse_bool(traffic, base.log_traffic)
    limit = os.getenv("AGENTBRIDGE_STDIO_BUFFER_LIMIT_BYTES")
    if limit is not None:
        updates["stdio_buffer_limit"] = clamp_buffer_limit(parse_int(limit, base.stdio_buffer_limit))
    return replace(base, **updates)


def load_config(path: str | Path | None = None, *, workspace_folder: str | None = None) -> BridgeConfig:
    """Load the bridge configuration.

    An explicit ``path`` must exist; the default config file is optional.
    """

    load_dotenv(config_dir() / ".env", override=False)
    load_dotenv(Path.cwd() / ".env", override=False)

    config = BridgeConfig(workspace_folder=workspace_folder)
    if path is not None:
        config = _from_mapping(config, _read_config_file(Path(path)))
    else:
        default_path = default_config_path()
        if default_path.is_file():
            config = _from_mapping(config, _read_config_file(default_path))
    return _from_environment(config)
