"""SQLite storage for long-term memory.

Holds four independent record sets: the append-only message log,
identity bindings, learned facts and session bookkeeping. The database
runs in WAL mode so read-only queries never wait on a concurrent writer,
including the retention purge which uses its own connection.
"""

import json
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import InvalidInput, StorageError
from .models import (
    BindingSource,
    Confidence,
    Fact,
    IdentityBinding,
    Message,
    PurgeResult,
    Role,
    Session,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  TEXT NOT NULL,
    timestamp   INTEGER NOT NULL,
    role        TEXT NOT NULL,
    content     TEXT NOT NULL,
    metadata    TEXT
);

CREATE TABLE IF NOT EXISTS identities (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    fingerprint   TEXT UNIQUE NOT NULL,
    subject       TEXT NOT NULL,
    confidence    TEXT NOT NULL DEFAULT 'medium',
    source        TEXT NOT NULL DEFAULT 'user',
    created_at    INTEGER NOT NULL,
    last_seen_at  INTEGER NOT NULL,
    notes         TEXT
);

CREATE TABLE IF NOT EXISTS facts (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    category    TEXT NOT NULL,
    key         TEXT NOT NULL,
    value       TEXT NOT NULL,
    confidence  REAL NOT NULL DEFAULT 0.8,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL,
    UNIQUE(category, key)
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id      TEXT PRIMARY KEY,
    started_at      INTEGER NOT NULL,
    last_active_at  INTEGER NOT NULL,
    message_count   INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_sessions_active ON sessions(last_active_at);
"""

MESSAGE_COLUMNS = "id, session_id, timestamp, role, content, metadata"
IDENTITY_COLUMNS = (
    "fingerprint, subject, confidence, source, created_at, last_seen_at, notes"
)
FACT_COLUMNS = "category, key, value, confidence, created_at, updated_at"


def _casefold(text: str | None) -> str | None:
    return text.casefold() if text is not None else None


class MemoryStore:
    """Persistent long-term memory using SQLite.

    One connection serves the request path and is guarded by a lock so it
    can be shared between threads. Timestamps are integer milliseconds
    since the epoch; message timestamps handed out by the store never go
    backwards, even if the wall clock does.
    """

    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], float] = time.time,
        busy_timeout: float = 5.0,
    ) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
            clock: Returns the current time in seconds since the epoch.
            busy_timeout: Seconds a writer waits for a competing write lock.
        """
        self.db_path = Path(db_path)
        self._clock = clock
        self._busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._last_ms = 0

    # -- connection handling -------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.db_path,
            timeout=self._busy_timeout,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the shared database connection."""
        if self._conn is None:
            self._conn = self._connect()
        return self._conn

    @contextmanager
    def _guarded(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run an operation on the shared connection, mapping failures to StorageError."""
        with self._lock:
            try:
                conn = self._get_connection()
                yield conn
            except sqlite3.Error as e:
                if self._conn is not None and self._conn.in_transaction:
                    self._conn.rollback()
                raise StorageError(f"{operation} failed: {e}") from e
            except OSError as e:
                raise StorageError(f"{operation} failed: {e}") from e

    def init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._guarded("init_db") as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def now_ms(self) -> int:
        """Current time in milliseconds according to the store clock."""
        return int(self._clock() * 1000)

    def _next_timestamp(self) -> int:
        with self._lock:
            now = max(self.now_ms(), self._last_ms)
            self._last_ms = now
            return now

    # -- messages ------------------------------------------------------------

    def append_message(
        self,
        session_id: str,
        role: Role | str,
        content: str,
        metadata: dict[str, Any] | None = None,
        timestamp: int | None = None,
    ) -> Message:
        """Append a message to the log and touch its session.

        Args:
            session_id: Conversation the message belongs to.
            role: "user" or "assistant".
            content: Message text.
            metadata: Optional opaque mapping, stored as JSON.
            timestamp: Explicit timestamp in ms; defaults to now.

        Returns:
            The stored message with its row id.
        """
        if not session_id:
            raise InvalidInput("session_id is required")
        try:
            role = Role(role)
        except ValueError as e:
            raise InvalidInput(f"Unknown role: {role!r}") from e

        ts = self._next_timestamp() if timestamp is None else int(timestamp)
        encoded = json.dumps(metadata) if metadata is not None else None

        with self._guarded("append_message") as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (session_id, timestamp, role, content, metadata)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, ts, role.value, content, encoded),
            )
            conn.execute(
                """
                INSERT INTO sessions (session_id, started_at, last_active_at, message_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(session_id) DO UPDATE SET
                    last_active_at = MAX(sessions.last_active_at, excluded.last_active_at),
                    message_count = sessions.message_count + 1
                """,
                (session_id, ts, ts),
            )
            conn.commit()
            row_id = cursor.lastrowid

        return Message(
            session_id=session_id,
            timestamp=ts,
            role=role,
            content=content,
            metadata=metadata,
            id=row_id,
        )

    def history(self, session_id: str, limit: int = 20) -> list[Message]:
        """Get the most recent messages of a session, oldest first.

        The newest `limit` rows are selected and then reversed, so when
        truncating it is the head of the conversation that gets dropped.
        """
        if limit <= 0:
            return []
        with self._guarded("history") as conn:
            cursor = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE session_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (session_id, limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def recent_messages(self, limit: int = 50) -> list[Message]:
        """Get the most recent messages across all sessions, oldest first."""
        if limit <= 0:
            return []
        with self._guarded("recent_messages") as conn:
            cursor = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def search_messages(
        self, query: str, limit: int = 10, case_sensitive: bool = False
    ) -> list[Message]:
        """Find messages whose content contains `query`, newest first.

        The default comparison folds case for all of Unicode, not only ASCII.
        """
        if limit <= 0:
            return []
        if case_sensitive:
            where, param = "instr(content, ?) > 0", query
        else:
            where, param = "instr(casefold(content), ?) > 0", query.casefold()
        with self._guarded("search_messages") as conn:
            cursor = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE {where}
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (param, limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    # -- identities ----------------------------------------------------------

    def upsert_identity(
        self,
        fingerprint: str,
        subject: str,
        confidence: Confidence | str = Confidence.HIGH,
        source: BindingSource | str = BindingSource.USER,
        notes: str | None = None,
    ) -> IdentityBinding:
        """Insert or update the binding for an image fingerprint.

        The update path refreshes subject, confidence, last_seen_at and
        notes. created_at and source keep their original values, and
        last_seen_at never moves backwards.
        """
        if not fingerprint:
            raise InvalidInput("fingerprint is required")
        if not subject:
            raise InvalidInput("subject is required")
        try:
            confidence = Confidence(confidence)
            source = BindingSource(source)
        except ValueError as e:
            raise InvalidInput(str(e)) from e

        now = self.now_ms()
        with self._guarded("upsert_identity") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO identities
                    (fingerprint, subject, confidence, source, created_at, last_seen_at, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(fingerprint) DO UPDATE SET
                    subject = excluded.subject,
                    confidence = excluded.confidence,
                    last_seen_at = MAX(identities.last_seen_at, excluded.last_seen_at),
                    notes = excluded.notes
                RETURNING {IDENTITY_COLUMNS}
                """,
                (fingerprint, subject, confidence.value, source.value, now, now, notes),
            )
            row = cursor.fetchone()
            conn.commit()
        return self._row_to_identity(row)

    def get_identity(self, fingerprint: str) -> IdentityBinding | None:
        """Get the binding for a fingerprint, or None if never bound."""
        with self._guarded("get_identity") as conn:
            cursor = conn.execute(
                f"SELECT {IDENTITY_COLUMNS} FROM identities WHERE fingerprint = ?",
                (fingerprint,),
            )
            row = cursor.fetchone()
        return self._row_to_identity(row) if row is not None else None

    def get_all_identities(self) -> list[IdentityBinding]:
        """Get every binding, most recently seen first."""
        with self._guarded("get_all_identities") as conn:
            cursor = conn.execute(
                f"SELECT {IDENTITY_COLUMNS} FROM identities "
                "ORDER BY last_seen_at DESC, id DESC"
            )
            rows = cursor.fetchall()
        return [self._row_to_identity(row) for row in rows]

    def touch_identity_last_seen(self, fingerprint: str) -> bool:
        """Bump last_seen_at for a fingerprint.

        Returns:
            True if a binding exists for the fingerprint.
        """
        with self._guarded("touch_identity_last_seen") as conn:
            cursor = conn.execute(
                """
                UPDATE identities SET last_seen_at = MAX(last_seen_at, ?)
                WHERE fingerprint = ?
                """,
                (self.now_ms(), fingerprint),
            )
            conn.commit()
        return cursor.rowcount > 0

    # -- facts ---------------------------------------------------------------

    def upsert_fact(
        self, category: str, key: str, value: str, confidence: float = 0.8
    ) -> Fact:
        """Insert or update a fact keyed by (category, key)."""
        if not category or not key:
            raise InvalidInput("category and key are required")
        if not 0.0 <= confidence <= 1.0:
            raise InvalidInput(f"confidence must be within [0, 1], got {confidence}")

        now = self.now_ms()
        with self._guarded("upsert_fact") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO facts (category, key, value, confidence, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(category, key) DO UPDATE SET
                    value = excluded.value,
                    confidence = excluded.confidence,
                    updated_at = excluded.updated_at
                RETURNING {FACT_COLUMNS}
                """,
                (category, key, value, confidence, now, now),
            )
            row = cursor.fetchone()
            conn.commit()
        return self._row_to_fact(row)

    def get_fact(self, category: str, key: str) -> Fact | None:
        """Get a fact by (category, key)."""
        with self._guarded("get_fact") as conn:
            cursor = conn.execute(
                f"SELECT {FACT_COLUMNS} FROM facts WHERE category = ? AND key = ?",
                (category, key),
            )
            row = cursor.fetchone()
        return self._row_to_fact(row) if row is not None else None

    def get_all_facts(self, category: str | None = None) -> list[Fact]:
        """Get facts, optionally filtered by category."""
        with self._guarded("get_all_facts") as conn:
            if category is not None:
                cursor = conn.execute(
                    f"SELECT {FACT_COLUMNS} FROM facts WHERE category = ? "
                    "ORDER BY updated_at DESC",
                    (category,),
                )
            else:
                cursor = conn.execute(
                    f"SELECT {FACT_COLUMNS} FROM facts ORDER BY category, updated_at DESC"
                )
            rows = cursor.fetchall()
        return [self._row_to_fact(row) for row in rows]

    # -- sessions ------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        """Get session bookkeeping, or None if the session never logged a message."""
        with self._guarded("get_session") as conn:
            cursor = conn.execute(
                "SELECT session_id, started_at, last_active_at, message_count "
                "FROM sessions WHERE session_id = ?",
                (session_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return Session(
            session_id=row["session_id"],
            started_at=row["started_at"],
            last_active_at=row["last_active_at"],
            message_count=row["message_count"],
        )

    # -- maintenance ---------------------------------------------------------

    def counts(self) -> dict[str, int]:
        """Number of rows in each record set."""
        result: dict[str, int] = {}
        with self._guarded("counts") as conn:
            for table in ("messages", "sessions", "identities", "facts"):
                row = conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
                result[table] = row["n"]
        return result

    def last_activity(self) -> int | None:
        """Timestamp of the newest logged message, if any."""
        with self._guarded("last_activity") as conn:
            row = conn.execute("SELECT MAX(timestamp) AS ts FROM messages").fetchone()
        return row["ts"]

    def purge_older_than(self, horizon: int) -> PurgeResult:
        """Delete messages and sessions strictly older than `horizon`, then vacuum.

        Runs on a dedicated connection so the shared request connection
        keeps serving reads while the purge is in progress.

        Args:
            horizon: Cutoff timestamp in milliseconds since the epoch.

        Returns:
            Number of messages and sessions deleted.
        """
        try:
            conn = self._connect()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"purge_older_than failed: {e}") from e

        try:
            with conn:
                messages = conn.execute(
                    "DELETE FROM messages WHERE timestamp < ?", (horizon,)
                ).rowcount
                sessions = conn.execute(
                    "DELETE FROM sessions WHERE last_active_at < ?", (horizon,)
                ).rowcount
            conn.execute("VACUUM")
        except sqlite3.Error as e:
            raise StorageError(f"purge_older_than failed: {e}") from e
        finally:
            conn.close()

        return PurgeResult(messages_deleted=messages, sessions_deleted=sessions)

    def clear_all(self) -> None:
        """Delete every record in every record set and reclaim space."""
        with self._guarded("clear_all") as conn:
            for table in ("messages", "identities", "facts", "sessions"):
                conn.execute(f"DELETE FROM {table}")
            conn.commit()
            conn.execute("VACUUM")

    # -- row mapping ---------------------------------------------------------

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        """Convert a database row to a Message."""
        return Message(
            session_id=row["session_id"],
            timestamp=row["timestamp"],
            role=Role(row["role"]),
            content=row["content"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            id=row["id"],
        )

    def _row_to_identity(self, row: sqlite3.Row) -> IdentityBinding:
        """Convert a database row to an IdentityBinding."""
        return IdentityBinding(
            fingerprint=row["fingerprint"],
            subject=row["subject"],
            confidence=Confidence(row["confidence"]),
            source=BindingSource(row["source"]),
            created_at=row["created_at"],
            last_seen_at=row["last_seen_at"],
            notes=row["notes"],
        )

    def _row_to_fact(self, row: sqlite3.Row) -> Fact:
        """Convert a database row to a Fact."""
        return Fact(
            category=row["category"],
            key=row["key"],
            value=row["value"],
            confidence=row["confidence"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
