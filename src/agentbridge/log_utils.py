"""Logging configuration and structured context helpers.

Every agentbridge module logs through the standard ``logging`` tree. The
helpers here attach a rotating file handler, inject contextvars-backed fields
(session id, terminal id, ...) into records, and gate the noisy per-frame
traffic log behind an explicit toggle.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from agentbridge.paths import log_dir

DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
TRAFFIC_PREVIEW_CHARS = 2000

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "agentbridge_log_context", default={}
)
_TRAFFIC_ENABLED = False

traffic_logger = logging.getLogger("agentbridge.traffic")


@dataclass(frozen=True)
class LogConfig:
    """Settings for :func:`configure_logging`, usually built from the environment."""

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    traffic: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS


def parse_level(value: str | None, default: int) -> int:
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging._nameToLevel.get(value.upper(), default)


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return int(value)
    return default


def build_log_config(
    *,
    log_file_name: str = "agentbridge.log",
    default_level: int = logging.INFO,
    traffic: bool | None = None,
) -> LogConfig:
    """Build log configuration from ``AGENTBRIDGE_LOG_*`` environment settings.

    ``traffic`` overrides ``AGENTBRIDGE_LOG_TRAFFIC`` when given, so the CLI
    flag and the config file can switch frame logging on.
    """

    env_dir = os.getenv("AGENTBRIDGE_LOG_DIR")
    directory = Path(env_dir) if env_dir else log_dir()
    directory.mkdir(parents=True, exist_ok=True)

    return LogConfig(
        log_file=directory / log_file_name,
        level=parse_level(os.getenv("AGENTBRIDGE_LOG_LEVEL"), default_level),
        stderr=parse_bool(os.getenv("AGENTBRIDGE_LOG_STDERR"), False),
        json=parse_bool(os.getenv("AGENTBRIDGE_LOG_JSON"), False),
        traffic=traffic if traffic is not None else parse_bool(os.getenv("AGENTBRIDGE_LOG_TRAFFIC"), False),
        max_bytes=parse_int(os.getenv("AGENTBRIDGE_LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backup_count=parse_int(os.getenv("AGENTBRIDGE_LOG_BACKUPS"), DEFAULT_LOG_BACKUPS),
    )


def configure_logging(config: LogConfig) -> None:
    """Configure root logging with rotation and context support.

    Root handlers are reset first so repeated calls (tests, reconnects) do not
    duplicate lines. stdout is never used: the terminal belongs to the UI.
    """

    set_traffic_logging(config.traffic)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(config.level)

    formatter: logging.Formatter
    if config.json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(ContextFilter())
    root_logger.addHandler(file_handler)

    if config.stderr:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(ContextFilter())
        root_logger.addHandler(stream_handler)


def set_traffic_logging(enabled: bool) -> None:
    global _TRAFFIC_ENABLED
    _TRAFFIC_ENABLED = enabled
    # frames are logged at DEBUG; keep them even when the root level is INFO
    traffic_logger.setLevel(logging.DEBUG if enabled else logging.NOTSET)


def traffic_enabled() -> bool:
    return _TRAFFIC_ENABLED


def log_traffic(direction: str, payload: str) -> None:
    """Record one wire frame (or stderr line) when traffic logging is on."""
    if not _TRAFFIC_ENABLED:
        return
    text = payload.rstrip("\n")
    if len(text) > TRAFFIC_PREVIEW_CHARS:
        text = f"{text[:TRAFFIC_PREVIEW_CHARS]}... ({len(text)} chars)"
    traffic_logger.debug("[%s] %s", direction, text)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach structured context fields to log records within a block."""

    current = _LOG_CONTEXT.get()
    merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short, stable event name with key=value fields."""

    logger.log(level, event, extra={"event_fields": fields})


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


def _format_fields(fields: Dict[str, Any]) -> str:
    parts: list[str] = []
    for key in sorted(fields):
        value = fields.get(key)
        if value is None:
            continue
        parts.append(f"{key}={_format_value(value)}")
    return " ".join(parts)


class ContextFilter(logging.Filter):
    """Copy the current log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        record.event_fields = getattr(record, "event_fields", {})
        return True


class ContextFormatter(logging.Formatter):
    """Human-readable lines with context and event fields appended."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _format_fields(getattr(record, "context_fields", {}))
        event_fields = _format_fields(getattr(record, "event_fields", {}))
        extra = " ".join(part for part in (context, event_fields) if part)
        if extra:
            return f"{base} {extra}"
        return base


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for jq or log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context_fields", {})
        fields = getattr(record, "event_fields", {})
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
