"""JSONL event log for memory observability."""

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class LogEntry:
    """A single log entry."""

    timestamp: str
    event: str
    session_id: str | None = None
    fingerprint: str | None = None
    duration_ms: float | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a flat dict, excluding None values.

        Event-specific fields in `extra` are lifted to the top level.
        """
        data = asdict(self)
        extra = data.pop("extra")
        data.update(extra)
        return {k: v for k, v in data.items() if v is not None and v != {}}


class JSONLLogger:
    """Logger that writes structured memory events in JSONL format."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "events.jsonl",
        max_size_mb: float = 10.0,
    ) -> None:
        if log_dir is None:
            log_dir = Path.home() / ".soma" / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self._lock = threading.Lock()

    @property
    def log_path(self) -> Path:
        """Current log file path."""
        return self.log_dir / self.filename

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        if not self.log_path.exists():
            return

        if self.log_path.stat().st_size >= self.max_size_bytes:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
            rotated_name = f"{self.log_path.stem}_{timestamp}.jsonl"
            self.log_path.rename(self.log_dir / rotated_name)

    def _write(self, entry: LogEntry) -> None:
        """Write a log entry to the file."""
        with self._lock:
            self._rotate_if_needed()
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def log(
        self,
        event: str,
        *,
        session_id: str | None = None,
        fingerprint: str | None = None,
        duration_ms: float | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Log an event."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            session_id=session_id,
            fingerprint=fingerprint,
            duration_ms=duration_ms,
            error=error,
            extra=extra if extra else {},
        )
        self._write(entry)

    def log_turn(
        self,
        session_id: str,
        *,
        intent: str,
        duration_ms: float | None = None,
        history_messages: int | None = None,
        history_tokens: int | None = None,
    ) -> None:
        """Log a completed text turn and how it was answered."""
        self.log(
            "turn",
            session_id=session_id,
            duration_ms=duration_ms,
            intent=intent,
            history_messages=history_messages,
            history_tokens=history_tokens,
        )

    def log_vision_turn(
        self,
        session_id: str,
        fingerprint: str,
        *,
        window_title: str = "",
        duration_ms: float | None = None,
    ) -> None:
        """Log a completed vision turn."""
        self.log(
            "vision_turn",
            session_id=session_id,
            fingerprint=fingerprint,
            duration_ms=duration_ms,
            window_title=window_title,
        )

    def log_identity_bind(
        self, session_id: str, fingerprint: str, subject: str, persisted: bool
    ) -> None:
        """Log an explicit identity binding."""
        self.log(
            "identity_bind",
            session_id=session_id,
            fingerprint=fingerprint,
            subject=subject,
            persisted=persisted,
        )

    def log_identity_resolve(
        self, session_id: str, fingerprint: str, resolved_from: str | None
    ) -> None:
        """Log an identity lookup; resolved_from is "cache", "store" or None."""
        self.log(
            "identity_resolve",
            session_id=session_id,
            fingerprint=fingerprint,
            resolved_from=resolved_from,
        )

    def log_retention_sweep(
        self,
        messages_deleted: int,
        sessions_deleted: int,
        *,
        horizon: int,
        duration_ms: float | None = None,
        error: str | None = None,
    ) -> None:
        """Log the outcome of a retention sweep."""
        self.log(
            "retention_sweep",
            duration_ms=duration_ms,
            error=error,
            horizon=horizon,
            messages_deleted=messages_deleted,
            sessions_deleted=sessions_deleted,
        )

    def log_storage_error(
        self, operation: str, error: str, *, session_id: str | None = None
    ) -> None:
        """Log a suppressed storage failure."""
        self.log(
            "storage_error",
            session_id=session_id,
            error=error,
            operation=operation,
        )

    def log_upstream_error(self, session_id: str, error: str) -> None:
        """Log a completion backend failure reported to the caller."""
        self.log("upstream_error", session_id=session_id, error=error)


# Global logger instance
_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(log_dir: str | Path | None = None, max_size_mb: float = 10.0) -> JSONLLogger:
    """Configure and return the global logger."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb)
    return _logger
