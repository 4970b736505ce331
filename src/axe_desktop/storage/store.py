from __future__ import annotations

import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from axe_desktop.models import Message, MessageRole, MessageStatus, Session, ToolCall

DEFAULT_USER_ID = "default"

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _is_transient(ex: BaseException) -> bool:
    if not isinstance(ex, sqlite3.OperationalError):
        return False
    text = str(ex).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def _on_store_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Transient store error: {exc}. Retrying (attempt {retry_state.attempt_number}/3)...")


_transient_retry = retry(
    retry=retry_if_exception(_is_transient),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    stop=stop_after_attempt(3),
    before_sleep=_on_store_retry,
    reraise=True,
)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def _loads(value: str | bytes | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed JSON column value: {str(value)[:80]!r}")
        return None


class RecordStore:
    """Durable sessions, messages, tool calls and settings backed by SQLite.

    A single connection is shared by every caller; statements are serialized
    with a lock so sessions streaming on different tasks or threads can write
    concurrently.
    """

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=5.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._initialize_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- sessions -----------------------------------------------------------

    @_transient_retry
    def create_session(self, session: Session) -> Session:
        if not session.id:
            session.id = str(uuid4())
        if not session.user_id:
            session.user_id = DEFAULT_USER_ID
        session.created_at = utc_now()
        session.updated_at = session.created_at
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sessions (id, user_id, title, model, provider_id, system_prompt, summary, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.user_id,
                    session.title,
                    session.model,
                    session.provider_id,
                    session.system_prompt,
                    session.summary,
                    session.created_at,
                    session.updated_at,
                ),
            )
            self._conn.commit()
        return session

    @_transient_retry
    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE id = ? LIMIT 1",
                (session_id,),
            ).fetchone()
        return self._row_to_session(row) if row is not None else None

    @_transient_retry
    def list_sessions(self, user_id: str = DEFAULT_USER_ID) -> list[Session]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT *
                FROM sessions
                WHERE user_id = ? AND archived_at IS NULL
                ORDER BY updated_at DESC, created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    @_transient_retry
    def update_session(self, session: Session) -> None:
        session.updated_at = utc_now()
        with self._lock:
            self._conn.execute(
                """
                UPDATE sessions
                SET title = ?, model = ?, provider_id = ?, system_prompt = ?, summary = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    session.title,
                    session.model,
                    session.provider_id,
                    session.system_prompt,
                    session.summary,
                    session.updated_at,
                    session.id,
                ),
            )
            self._conn.commit()

    @_transient_retry
    def touch_session(self, session_id: str) -> None:
        with self._lock:
            self._conn.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (utc_now(), session_id))
            self._conn.commit()

    @_transient_retry
    def archive_session(self, session_id: str) -> None:
        with self._lock:
            self._conn.execute("UPDATE sessions SET archived_at = ? WHERE id = ?", (utc_now(), session_id))
            self._conn.commit()

    @_transient_retry
    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            self._conn.commit()

    # -- messages -----------------------------------------------------------

    @_transient_retry
    def create_message(self, message: Message) -> Message:
        if not message.id:
            message.id = str(uuid4())
        message.created_at = utc_now()
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
                (message.session_id,),
            ).fetchone()
            next_seq = int(row["max_seq"]) + 1
            self._conn.execute(
                """
                INSERT INTO messages (id, session_id, seq, role, content, status, token_count, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.session_id,
                    next_seq,
                    str(message.role),
                    message.content,
                    str(message.status),
                    message.token_count,
                    _dumps(message.metadata or {}),
                    message.created_at,
                ),
            )
            self._conn.commit()
        return message

    @_transient_retry
    def get_message(self, message_id: str) -> Message | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM messages WHERE id = ? LIMIT 1",
                (message_id,),
            ).fetchone()
        return self._row_to_message(row) if row is not None else None

    @_transient_retry
    def list_messages(self, session_id: str, limit: int = 0, offset: int = 0) -> list[Message]:
        """Messages of a session in conversation order; ``limit <= 0`` means all."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT *
                FROM messages
                WHERE session_id = ?
                ORDER BY seq ASC
                LIMIT ? OFFSET ?
                """,
                (session_id, limit if limit > 0 else -1, max(0, offset)),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    @_transient_retry
    def update_message(self, message: Message) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE messages
                SET content = ?, status = ?, token_count = ?, metadata_json = ?
                WHERE id = ?
                """,
                (
                    message.content,
                    str(message.status),
                    message.token_count,
                    _dumps(message.metadata or {}),
                    message.id,
                ),
            )
            self._conn.commit()

    # -- tool calls ---------------------------------------------------------

    @_transient_retry
    def create_tool_call(self, tool_call: ToolCall) -> ToolCall:
        if not tool_call.id:
            tool_call.id = str(uuid4())
        tool_call.created_at = utc_now()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO tool_calls (id, session_id, message_id, tool_name, args_json, result_json, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tool_call.id,
                    tool_call.session_id,
                    tool_call.message_id,
                    tool_call.tool_name,
                    _dumps(tool_call.args or {}),
                    _dumps(tool_call.result) if tool_call.result is not None else None,
                    tool_call.error,
                    tool_call.created_at,
                ),
            )
            self._conn.commit()
        return tool_call

    @_transient_retry
    def update_tool_call(self, tool_call: ToolCall) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE tool_calls SET result_json = ?, error = ? WHERE id = ?",
                (
                    _dumps(tool_call.result) if tool_call.result is not None else None,
                    tool_call.error,
                    tool_call.id,
                ),
            )
            self._conn.commit()

    @_transient_retry
    def list_tool_calls(self, session_id: str) -> list[ToolCall]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT *
                FROM tool_calls
                WHERE session_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (session_id,),
            ).fetchall()
        return [
            ToolCall(
                id=row["id"],
                session_id=row["session_id"],
                message_id=row["message_id"],
                tool_name=row["tool_name"],
                args=_loads(row["args_json"]) or {},
                result=_loads(row["result_json"]),
                error=row["error"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -- settings -----------------------------------------------------------

    @_transient_retry
    def get_setting(self, key: str) -> Any:
        with self._lock:
            row = self._conn.execute("SELECT value_json FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row["value_json"])

    @_transient_retry
    def set_setting(self, key: str, value: Any) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO settings (key, value_json) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json
                """,
                (key, json.dumps(value, ensure_ascii=True)),
            )
            self._conn.commit()

    # -- internals ----------------------------------------------------------

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            model=row["model"],
            provider_id=row["provider_id"] or "",
            system_prompt=row["system_prompt"] or "",
            summary=row["summary"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            archived_at=row["archived_at"],
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            status=MessageStatus(row["status"]),
            token_count=row["token_count"],
            metadata=_loads(row["metadata_json"]) or {},
            created_at=row["created_at"],
        )

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                model TEXT NOT NULL,
                provider_id TEXT NOT NULL DEFAULT '',
                system_prompt TEXT,
                summary TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                archived_at TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system', 'tool')),
                content TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'completed'
                    CHECK (status IN ('in_progress', 'completed', 'cancelled', 'failed')),
                token_count INTEGER NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                UNIQUE(session_id, seq)
            );

            CREATE TABLE IF NOT EXISTS tool_calls (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                tool_name TEXT NOT NULL,
                args_json TEXT NOT NULL DEFAULT '{}',
                result_json TEXT NULL,
                error TEXT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_seq
                ON messages(session_id, seq);
            CREATE INDEX IF NOT EXISTS idx_tool_calls_session_created
                ON tool_calls(session_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_sessions_user_updated
                ON sessions(user_id, updated_at);
            """
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO users (id, name, created_at) VALUES (?, 'Default User', ?)",
            (DEFAULT_USER_ID, utc_now()),
        )
        self._conn.commit()
