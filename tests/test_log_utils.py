from __future__ import annotations

import json
import logging
import dataclasses
from pathlib import Path

from agentbridge.log_utils import (
    ContextFilter,
    LogConfig,
    ContextFormatter,
    JsonFormatter,
    build_log_config,
    configure_logging,
    log_context,
    log_event,
    log_traffic,
    set_traffic_logging,
    traffic_enabled,
)


def _record(logger_name: str = "agentbridge.test") -> tuple[logging.Logger, list[logging.LogRecord]]:
    records: list[logging.LogRecord] = []

    class _Collect(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    logger = logging.getLogger(logger_name)
    handler = _Collect()
    handler.addFilter(ContextFilter())
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    return logger, records


def test_log_event_carries_context_and_fields() -> None:
    logger, records = _record()

    with log_context(session_id="sess-1", terminal_id=None):
        log_event(logger, "terminal.created", command="echo hi", pid=42)

    line = ContextFormatter("%(message)s").format(records[-1])
    assert line == 'terminal.created session_id=sess-1 command="echo hi" pid=42'

    payload = json.loads(JsonFormatter().format(records[-1]))
    assert payload["message"] == "terminal.created"
    assert payload["context"] == {"session_id": "sess-1"}
    assert payload["fields"] == {"command": "echo hi", "pid": 42}


def test_traffic_log_is_opt_in_and_truncated() -> None:
    _logger, records = _record("agentbridge.traffic")

    log_traffic("send", "{}")
    assert records == []

    assert traffic_enabled() is False
    set_traffic_logging(True)
    log_traffic("recv", "x" * 5000)
    assert records[-1].getMessage().startswith("[recv] xxx")
    assert records[-1].getMessage().endswith("(5000 chars)")


def test_build_log_config_reads_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENTBRIDGE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("AGENTBRIDGE_LOG_LEVEL", "debug")
    monkeypatch.setenv("AGENTBRIDGE_LOG_JSON", "yes")
    monkeypatch.setenv("AGENTBRIDGE_LOG_MAX_BYTES", "not-a-number")

    config = build_log_config(traffic=True)

    assert config.log_file == tmp_path / "logs" / "agentbridge.log"
    assert config.level == logging.DEBUG
    assert config.json is True
    assert config.traffic is True
    assert config.max_bytes == 5_000_000


def test_log_config_fields_are_all_consumed() -> None:
    assert [field.name for field in dataclasses.fields(LogConfig)] == [
        "log_file",
        "level",
        "stderr",
        "json",
        "traffic",
        "max_bytes",
        "backup_count",
    ]


def test_configure_logging_writes_rotating_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENTBRIDGE_LOG_DIR", str(tmp_path))
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        configure_logging(build_log_config())
        log_event(logging.getLogger("agentbridge.test.file"), "bridge.started", pid=1)
        for handler in root.handlers:
            handler.flush()
        assert "bridge.started pid=1" in (tmp_path / "agentbridge.log").read_text(encoding="utf-8")
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved[0]:
            root.addHandler(handler)
        root.setLevel(saved[1])
