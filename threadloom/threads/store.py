# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from threadloom.errors import PersistenceError
from threadloom.events import (
    MessageEvent,
    ToolRequestEvent,
    ToolResponseEvent,
    parse_thread_message,
)

from .models import StoredMessage, ThreadSummary
from .thread import ConversationThread, HistoryMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")

_THREADS_DDL = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    username TEXT NOT NULL,
    name TEXT NOT NULL,
    summary TEXT,
    created_date TEXT NOT NULL,
    modified_date TEXT NOT NULL,
    price REAL NOT NULL DEFAULT 0,
    starring TEXT NOT NULL DEFAULT '[]',
    data TEXT
);
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    type TEXT NOT NULL,
    role TEXT,
    name TEXT,
    content TEXT NOT NULL,
    tool_request_id TEXT,
    length INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (thread_id, id),
    FOREIGN KEY(thread_id) REFERENCES threads(id) ON DELETE CASCADE
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_threads_project_modified ON threads(project_id, modified_date DESC);",
    "CREATE INDEX IF NOT EXISTS idx_threads_project_user_modified"
    " ON threads(project_id, username, modified_date DESC);",
    "CREATE INDEX IF NOT EXISTS idx_messages_thread_timestamp ON messages(thread_id, timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_messages_type_thread ON messages(type, thread_id);",
]

_SUMMARY_COLUMNS = "id, project_id, username, name, summary, created_date, modified_date, price, starring"


def _ensure_pragmas(connection: sqlite3.Connection, busy_timeout_ms: int) -> None:
    connection.execute("PRAGMA foreign_keys = ON;")
    connection.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
    connection.execute("PRAGMA journal_mode = WAL;")


class SQLiteThreadStore:
    """SQLite-backed repository for conversation threads of every project under one root.

    A single connection is shared by all calls; every call runs in a worker thread
    and is serialised by an asyncio lock, so one store per database file is enough.
    """

    def __init__(self, db_path: str | Path, *, busy_timeout_ms: int = 5000) -> None:
        path = Path(db_path)
        if str(db_path) != ":memory:" and not path.is_absolute():
            path = Path.cwd() / path
        self._db_path = str(db_path) if str(db_path) == ":memory:" else str(path)
        self._busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    async def init(self) -> None:
        """Open the connection and initialise the schema."""
        if self._connection is not None:
            return
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        def _init() -> sqlite3.Connection:
            connection = sqlite3.connect(self._db_path, check_same_thread=False)
            connection.row_factory = sqlite3.Row
            _ensure_pragmas(connection, self._busy_timeout_ms)
            connection.execute(_THREADS_DDL)
            connection.execute(_MESSAGES_DDL)
            for statement in _CREATE_INDEXES:
                connection.execute(statement)
            connection.commit()
            return connection

        async with self._lock:
            self._connection = await asyncio.to_thread(_init)
        logger.info("Thread database initialised at %s", self._db_path)

    async def close(self) -> None:
        async with self._lock:
            if self._connection is not None:
                await asyncio.to_thread(self._connection.close)
                self._connection = None

    async def save(self, thread: ConversationThread) -> None:
        """Upsert the thread row and replace all of its messages atomically."""
        thread_row = (
            thread.id,
            thread.project_id,
            thread.username,
            thread.name,
            thread.summary,
            _format_ts(thread.created_date),
            _format_ts(thread.modified_date or thread.created_date),
            thread.price,
            json.dumps(sorted(thread.starring)),
            json.dumps(thread.data) if thread.data else None,
        )
        message_rows = [_message_row(thread.id, seq, message) for seq, message in enumerate(thread.messages)]

        def _save(connection: sqlite3.Connection) -> None:
            try:
                connection.execute("BEGIN")
                connection.execute(
                    "INSERT INTO threads (id, project_id, username, name, summary, created_date, modified_date,"
                    " price, starring, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
                    " ON CONFLICT(id) DO UPDATE SET project_id = excluded.project_id,"
                    " username = excluded.username, name = excluded.name, summary = excluded.summary,"
                    " modified_date = excluded.modified_date, price = excluded.price,"
                    " starring = excluded.starring, data = excluded.data",
                    thread_row,
                )
                connection.execute("DELETE FROM messages WHERE thread_id = ?", (thread.id,))
                connection.executemany(
                    "INSERT INTO messages (id, thread_id, seq, timestamp, type, role, name, content,"
                    " tool_request_id, length) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    message_rows,
                )
                connection.commit()
            except Exception:
                connection.rollback()
                raise

        try:
            await self._run(_save)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save thread {thread.id}: {exc}") from exc
        logger.debug("Saved thread %s (%d messages)", thread.id, len(message_rows))

    async def get_by_id(self, project_id: str, thread_id: str) -> Optional[ConversationThread]:
        def _load(connection: sqlite3.Connection) -> tuple[Optional[sqlite3.Row], list[sqlite3.Row]]:
            row = connection.execute(
                f"SELECT {_SUMMARY_COLUMNS}, data FROM threads WHERE id = ? AND project_id = ?",
                (thread_id, project_id),
            ).fetchone()
            if row is None:
                return None, []
            messages = connection.execute(
                "SELECT id, type, content FROM messages WHERE thread_id = ? ORDER BY seq ASC",
                (thread_id,),
            ).fetchall()
            return row, messages

        row, message_rows = await self._run(_load)
        if row is None:
            return None
        messages: list[HistoryMessage] = []
        for message_row in message_rows:
            message = _row_to_message(message_row)
            if message is not None:
                messages.append(message)
        return ConversationThread(
            id=row["id"],
            project_id=row["project_id"],
            username=row["username"],
            name=row["name"],
            summary=row["summary"],
            created_date=_parse_ts(row["created_date"]),
            modified_date=_parse_ts(row["modified_date"]),
            price=float(row["price"] or 0.0),
            starring=set(json.loads(row["starring"] or "[]")),
            data=json.loads(row["data"]) if row["data"] else {},
            messages=messages,
        )

    async def list_by_project(self, project_id: str, username: Optional[str] = None) -> list[ThreadSummary]:
        if username is None:
            query = f"SELECT {_SUMMARY_COLUMNS} FROM threads WHERE project_id = ? ORDER BY modified_date DESC"
            params: tuple = (project_id,)
        else:
            query = (
                f"SELECT {_SUMMARY_COLUMNS} FROM threads WHERE project_id = ? AND username = ?"
                " ORDER BY modified_date DESC"
            )
            params = (project_id, username)
        rows = await self._run(lambda connection: connection.execute(query, params).fetchall())
        return [self._row_to_summary(row) for row in rows]

    async def delete(self, project_id: str, thread_id: str) -> bool:
        def _delete(connection: sqlite3.Connection) -> int:
            cursor = connection.execute(
                "DELETE FROM threads WHERE id = ? AND project_id = ?",
                (thread_id, project_id),
            )
            connection.commit()
            return cursor.rowcount

        removed = await self._run(_delete)
        if removed:
            logger.info("Deleted thread %s from project %s", thread_id, project_id)
        return bool(removed)

    async def list_messages_by_type(self, project_id: str, message_type: str) -> list[StoredMessage]:
        def _query(connection: sqlite3.Connection) -> list[sqlite3.Row]:
            return connection.execute(
                "SELECT m.thread_id, m.timestamp, m.type, m.role, m.name, m.content, m.length"
                " FROM messages m JOIN threads t ON t.id = m.thread_id"
                " WHERE m.type = ? AND t.project_id = ? ORDER BY m.timestamp ASC",
                (message_type, project_id),
            ).fetchall()

        rows = await self._run(_query)
        return [
            StoredMessage(
                thread_id=row["thread_id"],
                timestamp=row["timestamp"],
                type=row["type"],
                role=row["role"],
                name=row["name"],
                content=row["content"],
                length=row["length"],
            )
            for row in rows
        ]

    async def update_metadata(
        self,
        project_id: str,
        thread_id: str,
        *,
        name: Optional[str] = None,
        starring: Optional[set[str]] = None,
    ) -> Optional[ThreadSummary]:
        assignments: list[str] = []
        params: list[Any] = []
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        if starring is not None:
            assignments.append("starring = ?")
            params.append(json.dumps(sorted(starring)))
        assignments.append("modified_date = ?")
        params.append(_format_ts(datetime.now(timezone.utc)))

        def _update(connection: sqlite3.Connection) -> Optional[sqlite3.Row]:
            connection.execute(
                f"UPDATE threads SET {', '.join(assignments)} WHERE id = ? AND project_id = ?",
                (*params, thread_id, project_id),
            )
            connection.commit()
            return connection.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM threads WHERE id = ? AND project_id = ?",
                (thread_id, project_id),
            ).fetchone()

        row = await self._run(_update)
        return self._row_to_summary(row) if row else None

    async def delete_expired(self, older_than: datetime) -> int:
        cutoff = _format_ts(older_than)

        def _delete(connection: sqlite3.Connection) -> int:
            cursor = connection.execute("DELETE FROM threads WHERE modified_date < ?", (cutoff,))
            connection.commit()
            return cursor.rowcount

        removed = await self._run(_delete)
        if removed:
            logger.info("Deleted %d threads not modified since %s", removed, cutoff)
        return removed

    async def _run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._connection is None:
            await self.init()
        async with self._lock:
            if self._connection is None:
                raise PersistenceError(f"Thread store {self._db_path} is closed")
            return await asyncio.to_thread(operation, self._connection)

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> ThreadSummary:
        return ThreadSummary(
            id=row["id"],
            project_id=row["project_id"],
            username=row["username"],
            name=row["name"],
            summary=row["summary"],
            created_date=_parse_ts(row["created_date"]),
            modified_date=_parse_ts(row["modified_date"]),
            price=float(row["price"] or 0.0),
            starring=json.loads(row["starring"] or "[]"),
        )


def _message_row(thread_id: str, seq: int, message: HistoryMessage) -> tuple:
    role = message.role if isinstance(message, MessageEvent) else None
    name = message.name if isinstance(message, (MessageEvent, ToolRequestEvent)) else None
    tool_request_id = (
        message.tool_request_id if isinstance(message, (ToolRequestEvent, ToolResponseEvent)) else None
    )
    return (
        message.timestamp,
        thread_id,
        seq,
        message.timestamp,
        message.type,
        role,
        name,
        message.model_dump_json(),
        tool_request_id,
        message.length,
    )


def _row_to_message(row: sqlite3.Row) -> Optional[HistoryMessage]:
    try:
        message = parse_thread_message(json.loads(row["content"]))
    except (ValueError, PydanticValidationError) as exc:
        logger.warning("Skipping unreadable message %s of type %s: %s", row["id"], row["type"], exc)
        return None
    if message.type != row["type"]:
        logger.warning("Skipping message %s: stored type %s does not match payload", row["id"], row["type"])
        return None
    return message


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
