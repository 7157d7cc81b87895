"""Session manager: the set of sessions, the current session, and persistence.

In-memory state is authoritative. Each mutation is applied in memory first
(through the session's ``ContextWindowManager``) and then written to the
store; a failed write raises ``PersistenceError`` but never rolls the
in-memory change back. Writes are therefore at-least-once from the UI's
point of view and only eventually consistent on disk.
"""

from __future__ import annotations

from typing import Any, Awaitable

import aiosqlite
import structlog

from localchat.config import ContextWindowConfig, OllamaConfig
from localchat.core.errors import NoActiveSessionError, PersistenceError
from localchat.core.memory.context import ContextSelector, ContextWindowManager
from localchat.core.memory.store import SessionStore
from localchat.core.tokens import TokenCounter
from localchat.core.types import Message, Session

logger = structlog.get_logger()


async def _persist(op: str, write: Awaitable[None]) -> None:
    """Await a store write, converting storage failures to PersistenceError."""
    try:
        await write
    except (aiosqlite.Error, OSError) as e:
        logger.error("persistence_failed", op=op, error=str(e))
        raise PersistenceError(f"Failed to {op}: {e}") from e


class SessionManager:
    """Owns sessions and one ``ContextWindowManager`` per session."""

    def __init__(
        self,
        store: SessionStore,
        config: ContextWindowConfig | None = None,
        counter: TokenCounter | None = None,
        default_model: str = OllamaConfig().default_model,
        selector: ContextSelector | None = None,
    ) -> None:
        self.store = store
        self.config = config or ContextWindowConfig()
        self.counter = counter or TokenCounter(self.config.encoding)
        self.default_model = default_model
        self._selector = selector
        self._sessions: dict[str, Session] = {}
        self._contexts: dict[str, ContextWindowManager] = {}
        self.current_session_id: str | None = None

    def _register(self, session: Session) -> ContextWindowManager:
        ctx = ContextWindowManager(
            session, config=self.config, counter=self.counter, selector=self._selector
        )
        self._sessions[session.id] = session
        self._contexts[session.id] = ctx
        return ctx

    async def initialize(self) -> None:
        """Load persisted sessions and select the most recently updated one."""
        sessions = await self.store.get_all_sessions()
        for session in sessions:
            ctx = self._register(session)
            ctx.recompute_total()

        if sessions:
            most_recent = max(sessions, key=lambda s: s.updated_at)
            self.current_session_id = most_recent.id

        logger.info(
            "sessions_loaded",
            count=len(sessions),
            current=self.current_session_id,
        )

    # --- read-only views ---

    @property
    def sessions(self) -> list[Session]:
        """All sessions, most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    @property
    def current_session(self) -> Session | None:
        if self.current_session_id is None:
            return None
        return self._sessions.get(self.current_session_id)

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_context_manager(self, session_id: str) -> ContextWindowManager | None:
        return self._contexts.get(session_id)

    def _current_context(self) -> ContextWindowManager:
        if self.current_session_id is None:
            raise NoActiveSessionError()
        ctx = self._contexts.get(self.current_session_id)
        if ctx is None:
            raise NoActiveSessionError(
                f"No context manager for session {self.current_session_id}"
            )
        return ctx

    def get_relevant_context(
        self, query: str | None = None, session_id: str | None = None
    ) -> list[Message]:
        if session_id is None and self.current_session_id is None:
            return []
        return self._context_for(session_id).get_relevant_context(query)

    # --- session lifecycle ---

    async def create_session(self, model: str | None = None) -> Session:
        session = Session(model=model or self.default_model)
        await _persist("create session", self.store.create_session(session))

        self._register(session)
        self.current_session_id = session.id
        logger.info("session_created", session_id=session.id, model=session.model)
        return session

    def switch_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        self.current_session_id = session_id
        return session

    async def delete_session(self, session_id: str) -> None:
        await _persist("delete session", self.store.delete_session(session_id))

        self._sessions.pop(session_id, None)
        self._contexts.pop(session_id, None)

        if self.current_session_id == session_id:
            remaining = list(self._sessions)
            self.current_session_id = remaining[0] if remaining else None
        logger.info("session_deleted", session_id=session_id, current=self.current_session_id)

    async def rename_session(self, session_id: str, name: str) -> Session:
        session = self._sessions[session_id]
        session.name = name
        session.touch()
        await self.update_session(session)
        return session

    async def set_session_model(self, session_id: str, model: str) -> Session:
        session = self._sessions[session_id]
        session.model = model
        session.touch()
        await self.update_session(session)
        return session

    # --- messages ---

    def _context_for(self, session_id: str | None) -> ContextWindowManager:
        if session_id is None:
            return self._current_context()
        ctx = self._contexts.get(session_id)
        if ctx is None:
            raise KeyError(session_id)
        return ctx

    async def add_message(self, message: Message, session_id: str | None = None) -> Message:
        """Append a message to the current (or given) session and persist it."""
        ctx = self._context_for(session_id)
        session = ctx.session
        evicted = ctx.add_message(message)

        await _persist("save message", self.store.add_message(session.id, message))
        await self._delete_evicted(evicted)
        await self.update_session(session)
        return message

    async def append_to_message(
        self, message_id: str, fragment: str, session_id: str | None = None
    ) -> Message:
        """Grow a message in place and persist it."""
        ctx = self._context_for(session_id)
        message = ctx.append_content(message_id, fragment)
        await self.update_message(message, session_id=ctx.session.id)
        return message

    async def remove_message(
        self, message_id: str, session_id: str | None = None
    ) -> Message | None:
        ctx = self._context_for(session_id)
        removed = ctx.remove_message(message_id)
        if removed is None:
            return None
        await _persist("delete message", self.store.delete_message(removed.id))
        await self.update_session(ctx.session)
        return removed

    async def trim_history(self, session_id: str | None = None) -> list[Message]:
        ctx = self._context_for(session_id)
        evicted = ctx.trim_history()
        if evicted:
            await self._delete_evicted(evicted)
            await self.update_session(ctx.session)
        return evicted

    async def _delete_evicted(self, evicted: list[Message]) -> None:
        for msg in evicted:
            await _persist("delete evicted message", self.store.delete_message(msg.id))

    # --- persistence of already-mutated state ---

    async def update_message(self, message: Message, session_id: str | None = None) -> None:
        await _persist("update message", self.store.update_message(message))

        session = self._sessions.get(session_id or self.current_session_id or "")
        if session:
            await self.update_session(session)

    async def update_session(self, session: Session) -> None:
        await _persist("update session", self.store.update_session(session))

    # --- usage analytics ---

    async def token_usage_by_model(self) -> list[dict[str, Any]]:
        return await self.store.token_usage_by_model()

    async def token_usage_by_day(self, limit: int = 30) -> list[dict[str, Any]]:
        return await self.store.token_usage_by_day(limit)

    async def session_stats(self, session_id: str | None = None) -> dict[str, Any]:
        """Stored message/token breakdown of the given (default: current) session."""
        sid = session_id or self.current_session_id
        if sid is None:
            raise NoActiveSessionError()
        return await self.store.session_stats(sid)
