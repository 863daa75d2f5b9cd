"""Tests for JSONL logging."""

import json
from pathlib import Path

import pytest

from soma.logging import JSONLLogger, LogEntry, configure_logger, get_logger


@pytest.fixture
def logger(tmp_path: Path) -> JSONLLogger:
    return JSONLLogger(log_dir=tmp_path / "logs")


def read_entries(logger: JSONLLogger) -> list[dict]:
    with open(logger.log_path) as f:
        return [json.loads(line) for line in f]


def test_log_entry_to_dict():
    """Test LogEntry excludes None values."""
    entry = LogEntry(timestamp="2024-01-01T00:00:00Z", event="test")
    data = entry.to_dict()

    assert "timestamp" in data
    assert "event" in data
    assert "session_id" not in data  # None excluded
    assert "extra" not in data


def test_log_entry_flattens_extra():
    """Extra fields appear at the top level."""
    entry = LogEntry(timestamp="t", event="turn", extra={"intent": "completion", "n": None})
    assert entry.to_dict() == {"timestamp": "t", "event": "turn", "intent": "completion"}


def test_log_creates_directory_and_file(tmp_path: Path):
    """Logging creates the log directory and file."""
    logger = JSONLLogger(log_dir=tmp_path / "nested" / "logs")
    logger.log("test_event")
    assert logger.log_path.exists()


def test_log_writes_jsonl(logger: JSONLLogger):
    """Test that logs are written in JSONL format."""
    logger.log("event1", session_id="s1")
    logger.log("event2", session_id="s2")

    entries = read_entries(logger)
    assert len(entries) == 2
    assert entries[0]["event"] == "event1"
    assert entries[0]["session_id"] == "s1"
    assert entries[1]["event"] == "event2"


def test_log_turn(logger: JSONLLogger):
    logger.log_turn(
        "s1",
        intent="completion",
        duration_ms=12.5,
        history_messages=4,
        history_tokens=120,
    )

    entry = read_entries(logger)[0]
    assert entry["event"] == "turn"
    assert entry["intent"] == "completion"
    assert entry["duration_ms"] == 12.5
    assert entry["history_tokens"] == 120


def test_log_identity_bind(logger: JSONLLogger):
    logger.log_identity_bind("s1", "abc123", "user", persisted=False)

    entry = read_entries(logger)[0]
    assert entry["event"] == "identity_bind"
    assert entry["fingerprint"] == "abc123"
    assert entry["subject"] == "user"
    assert entry["persisted"] is False


def test_log_identity_resolve_unresolved(logger: JSONLLogger):
    """An unresolved lookup omits resolved_from."""
    logger.log_identity_resolve("s1", "abc123", None)
    entry = read_entries(logger)[0]
    assert entry["event"] == "identity_resolve"
    assert "resolved_from" not in entry


def test_log_retention_sweep(logger: JSONLLogger):
    logger.log_retention_sweep(3, 1, horizon=1000, duration_ms=5.0)
    entry = read_entries(logger)[0]
    assert entry["messages_deleted"] == 3
    assert entry["sessions_deleted"] == 1
    assert entry["horizon"] == 1000


def test_log_storage_and_upstream_errors(logger: JSONLLogger):
    logger.log_storage_error("append_message", "disk full", session_id="s1")
    logger.log_upstream_error("s1", "timed out")

    storage, upstream = read_entries(logger)
    assert storage["operation"] == "append_message"
    assert storage["error"] == "disk full"
    assert upstream["event"] == "upstream_error"


def test_rotation(tmp_path: Path):
    """Test log rotation when file exceeds max size."""
    logger = JSONLLogger(log_dir=tmp_path, max_size_mb=0.0001)  # ~100 bytes

    for i in range(10):
        logger.log(f"event_{i}", session_id="x" * 50)

    log_files = list(tmp_path.glob("events*.jsonl"))
    assert len(log_files) > 1


def test_configure_logger(tmp_path: Path):
    """configure_logger replaces the global instance."""
    configured = configure_logger(log_dir=tmp_path)
    assert get_logger() is configured
    assert configured.log_dir == tmp_path
