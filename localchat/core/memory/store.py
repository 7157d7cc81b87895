"""Session store: durable persistence of sessions and messages.

``SessionStore`` is the interface the session manager consumes;
``SQLiteSessionStore`` implements it on top of aiosqlite.
No transactional guarantees are assumed by callers: every method is an
independent write and the in-memory state may briefly run ahead of disk.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from localchat.core.types import Message, Role, Session

logger = structlog.get_logger()

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    total_tokens INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    token_count INTEGER DEFAULT 0,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at);
"""


class SessionStore(ABC):
    """Key-indexed persistence for sessions and their messages."""

    @abstractmethod
    async def create_session(self, session: Session) -> None: ...

    @abstractmethod
    async def update_session(self, session: Session) -> None: ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete the session's messages, then the session record."""

    @abstractmethod
    async def get_all_sessions(self) -> list[Session]:
        """All sessions with their messages in conversation order."""

    @abstractmethod
    async def add_message(self, session_id: str, message: Message) -> None: ...

    @abstractmethod
    async def update_message(self, message: Message) -> None: ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> None: ...

    @abstractmethod
    async def get_session_messages(self, session_id: str) -> list[Message]: ...

    # --- usage analytics ---

    @abstractmethod
    async def token_usage_by_day(self, limit: int = 30) -> list[dict[str, Any]]:
        """Rows of ``{"date", "tokens"}``, most recent day first."""

    @abstractmethod
    async def token_usage_by_model(self) -> list[dict[str, Any]]:
        """Rows of ``{"model", "tokens"}``, heaviest model first."""

    @abstractmethod
    async def token_usage_by_role(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def session_stats(self, session_id: str) -> dict[str, Any]: ...


class SQLiteSessionStore(SessionStore):
    """Session store backed by a local SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._initialized = False

    async def _ensure_db(self) -> None:
        """Initialize database tables if needed."""
        if self._initialized:
            return
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(CREATE_TABLES_SQL)
            await db.commit()
        self._initialized = True

    # --- sessions ---

    async def create_session(self, session: Session) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """INSERT INTO sessions (id, name, model, created_at, updated_at, total_tokens)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (session.id, session.name, session.model,
                 session.created_at.isoformat(), session.updated_at.isoformat(),
                 session.total_tokens),
            )
            await db.commit()

    async def update_session(self, session: Session) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """UPDATE sessions
                   SET name = ?, model = ?, updated_at = ?, total_tokens = ?
                   WHERE id = ?""",
                (session.name, session.model, session.updated_at.isoformat(),
                 session.total_tokens, session.id),
            )
            await db.commit()

    async def delete_session(self, session_id: str) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            await db.commit()

    async def get_session(self, session_id: str) -> Session | None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        session = _row_to_session(dict(row))
        session.messages = await self.get_session_messages(session_id)
        return session

    async def get_all_sessions(self) -> list[Session]:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM sessions ORDER BY updated_at DESC"
            ) as cursor:
                rows = await cursor.fetchall()

        sessions = [_row_to_session(dict(row)) for row in rows]
        for session in sessions:
            session.messages = await self.get_session_messages(session.id)
        return sessions

    # --- messages ---

    async def add_message(self, session_id: str, message: Message) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """INSERT INTO messages (id, session_id, role, content, token_count, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (message.id, session_id, message.role.value, message.content,
                 message.token_count or 0, message.timestamp.isoformat()),
            )
            await db.commit()

    async def update_message(self, message: Message) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "UPDATE messages SET content = ?, token_count = ? WHERE id = ?",
                (message.content, message.token_count or 0, message.id),
            )
            await db.commit()

    async def delete_message(self, message_id: str) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            await db.commit()

    async def get_session_messages(self, session_id: str) -> list[Message]:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """SELECT * FROM messages WHERE session_id = ?
                   ORDER BY rowid""",
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            Message(
                id=r["id"],
                role=Role(r["role"]),
                content=r["content"],
                token_count=r["token_count"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
            )
            for r in rows
        ]

    # --- analytics ---

    async def token_usage_by_day(self, limit: int = 30) -> list[dict[str, Any]]:
        """Token totals per calendar day (UTC), most recent day first."""
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """SELECT substr(timestamp, 1, 10) AS date, SUM(token_count) AS tokens
                   FROM messages
                   GROUP BY date
                   ORDER BY date DESC
                   LIMIT ?""",
                (limit,),
            ) as cursor:
                return [dict(row) for row in await cursor.fetchall()]

    async def token_usage_by_model(self) -> list[dict[str, Any]]:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """SELECT s.model AS model, SUM(m.token_count) AS tokens
                   FROM messages m
                   JOIN sessions s ON m.session_id = s.id
                   GROUP BY s.model
                   ORDER BY tokens DESC"""
            ) as cursor:
                return [dict(row) for row in await cursor.fetchall()]

    async def token_usage_by_role(self) -> list[dict[str, Any]]:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """SELECT role, SUM(token_count) AS tokens
                   FROM messages
                   GROUP BY role"""
            ) as cursor:
                return [dict(row) for row in await cursor.fetchall()]

    async def session_stats(self, session_id: str) -> dict[str, Any]:
        """Message/token breakdown and duration (seconds) of one session."""
        messages = await self.get_session_messages(session_id)
        stats: dict[str, Any] = {
            "message_count": len(messages),
            "total_tokens": 0,
            "user_tokens": 0,
            "assistant_tokens": 0,
            "duration": 0,
        }
        if not messages:
            return stats

        for msg in messages:
            tokens = msg.token_count or 0
            stats["total_tokens"] += tokens
            if msg.role == Role.USER:
                stats["user_tokens"] += tokens
            else:
                stats["assistant_tokens"] += tokens

        timestamps = [m.timestamp for m in messages]
        stats["duration"] = int((max(timestamps) - min(timestamps)).total_seconds())
        return stats

    async def wipe(self) -> None:
        """Delete every session and message."""
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM messages")
            await db.execute("DELETE FROM sessions")
            await db.commit()
        logger.info("store_wiped", db_path=self._db_path)


def _row_to_session(row: dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        name=row["name"],
        model=row["model"],
        total_tokens=row["total_tokens"] or 0,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
