"""Tests for logging configuration and structured telemetry."""

import json
import logging
from pathlib import Path

import pytest

import agentdesk.log as log_module
import agentdesk.telemetry as telemetry
from agentdesk.log import ConsoleFormatter, JsonlHandler, configure_logging, log_directory, logger
from agentdesk.telemetry import REDACTED, log_debug_payload, log_event, sanitize
from agentdesk.util.json import make_json_safe

pytestmark = pytest.mark.unit


@pytest.fixture
def reset_logger():
    prev_handlers = list(logger.handlers)
    prev_level = logger.level
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    try:
        yield
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        logger.handlers.extend(prev_handlers)
        logger.setLevel(prev_level)


@pytest.fixture
def jsonl(tmp_path: Path):
    log_file = tmp_path / "events.jsonl"
    handler = JsonlHandler(log_file)
    logger.addHandler(handler)
    prev_level = logger.level
    logger.setLevel(logging.DEBUG)
    try:
        yield log_file
    finally:
        logger.setLevel(prev_level)
        logger.removeHandler(handler)
        handler.close()


def _entries(log_file: Path) -> list[dict]:
    return [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]


def test_sanitize_redacts_nested_sensitive_keys() -> None:
    sanitized = sanitize(
        {
            "Authorization": "Bearer abc",
            "nested": {"api_key": "k", "value": 1},
            "list": [{"password": "p"}],
        }
    )

    assert sanitized == {
        "Authorization": REDACTED,
        "nested": {"api_key": REDACTED, "value": 1},
        "list": [{"password": REDACTED}],
    }


def test_log_event_records_payload_size_and_duration(jsonl: Path, monkeypatch) -> None:
    monkeypatch.setattr(telemetry.time, "monotonic", lambda: 3.5)

    log_event("TOOL_RESULT", {"tool": "Read", "token": "secret"}, start_time=1.0)

    (entry,) = _entries(jsonl)
    assert entry["event"] == "TOOL_RESULT"
    assert entry["payload"] == {"tool": "Read", "token": REDACTED}
    assert entry["duration_ms"] == 2500
    assert entry["size_bytes"] == len(json.dumps(entry["payload"]).encode("utf-8"))
    assert "secret" not in jsonl.read_text(encoding="utf-8")


def test_debug_payload_is_skipped_when_debug_disabled(jsonl: Path) -> None:
    logger.setLevel(logging.INFO)

    log_debug_payload("LLM_REQUEST_DETAIL", {"messages": [1, 2]})

    assert jsonl.read_text(encoding="utf-8") == ""


def test_debug_payload_handles_sequences_and_bytes(jsonl: Path) -> None:
    log_debug_payload("MCP_REQUEST", [{"cookie": "c"}, b"\x00\x01"])

    (entry,) = _entries(jsonl)
    assert entry["payload"] == [{"cookie": REDACTED}, "<2 bytes>"]
    assert entry["message"].startswith("MCP_REQUEST [")


def test_make_json_safe_converts_unknown_values() -> None:
    assert make_json_safe({1: {"a", "b"}, "t": (1, 2), "p": Path("x")}) == {
        "1": ["a", "b"],
        "t": [1, 2],
        "p": repr(Path("x")),
    }


def test_configure_logging_attaches_handlers_once(reset_logger, tmp_path: Path) -> None:
    configure_logging(log_dir=tmp_path / "logs")
    handlers = list(logger.handlers)

    configure_logging(level=logging.DEBUG)

    assert logger.handlers == handlers
    assert sum(isinstance(h, JsonlHandler) for h in handlers) == 1
    console = [h for h in handlers if type(h) is logging.StreamHandler]
    assert isinstance(console[0].formatter, ConsoleFormatter)
    assert Path(handlers[1].baseFilename) == (tmp_path / "logs" / "agentdesk.log").resolve()


def test_log_directory_from_environment(reset_logger, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv(log_module.LOG_DIR_ENV, str(tmp_path / "env-logs"))

    configure_logging()
    logger.debug("hello")

    assert log_directory() == (tmp_path / "env-logs").resolve()
    assert "hello" in (tmp_path / "env-logs" / "agentdesk.log").read_text(encoding="utf-8")
    assert log_directory(tmp_path / "explicit") == (tmp_path / "explicit").resolve()


def test_console_formatter_appends_event_payload() -> None:
    record = logging.LogRecord("agentdesk", logging.INFO, __file__, 0, "LLM_REQUEST", (), None)
    record.json = {"event": "LLM_REQUEST", "payload": {"model": "m"}}

    assert ConsoleFormatter().format(record) == 'INFO: LLM_REQUEST {"model": "m"}'
