"""Chat engine: drives one send from user text to a streamed assistant reply.

Per session the engine walks ``idle -> sending -> streaming`` and ends in
``completed``, ``cancelled`` or ``failed`` before returning to ``idle``.
Only one send may be active per session; the cancellation token registered
for that send is the only handle ``stop_generation`` uses.
"""

from __future__ import annotations

import inspect
from typing import Any, Callable

import structlog

from localchat.core.cancellation import CancellationToken
from localchat.core.errors import (
    GenerationCancelled,
    GenerationError,
    GenerationInProgressError,
    NoActiveSessionError,
    PersistenceError,
)
from localchat.core.ollama_client import OllamaClient
from localchat.core.sessions import SessionManager
from localchat.core.types import (
    GenerationResult,
    GenerationState,
    Message,
    Role,
    Session,
)

logger = structlog.get_logger()

# Number of leading words of the first user message used as the session name
_DEFAULT_NAME_WORDS = 6

_ROLE_LABELS = {Role.USER: "User", Role.ASSISTANT: "Assistant"}


def derive_session_name(text: str, words: int = _DEFAULT_NAME_WORDS) -> str:
    """Leading words of a message, whitespace-normalized."""
    return " ".join(text.split()[:words])


def build_prompt(context: list[Message]) -> str:
    """Render conversation history as a role-labelled transcript.

    The transcript ends with an open ``Assistant:`` turn for the model to
    complete.
    """
    turns = [f"{_ROLE_LABELS[m.role]}: {m.content}" for m in context if m.content]
    turns.append(f"{_ROLE_LABELS[Role.ASSISTANT]}:")
    return "\n\n".join(turns)


class ChatEngine:
    """Composes the session manager and the streaming client."""

    def __init__(
        self,
        session_manager: SessionManager,
        client: OllamaClient,
        name_words: int = _DEFAULT_NAME_WORDS,
    ) -> None:
        self.sessions = session_manager
        self.client = client
        self.name_words = name_words
        self._tokens: dict[str, CancellationToken] = {}
        self._states: dict[str, GenerationState] = {}
        self._errors: dict[str, str | None] = {}

    # --- state queries ---

    def _resolve(self, session_id: str | None) -> str | None:
        return session_id or self.sessions.current_session_id

    def state(self, session_id: str | None = None) -> GenerationState:
        sid = self._resolve(session_id)
        return self._states.get(sid or "", GenerationState.IDLE)

    def is_generating(self, session_id: str | None = None) -> bool:
        return self.state(session_id) in (GenerationState.SENDING, GenerationState.STREAMING)

    def last_error(self, session_id: str | None = None) -> str | None:
        sid = self._resolve(session_id)
        return self._errors.get(sid or "")

    # --- UI operations ---

    async def create_session(self, model: str | None = None) -> Session:
        return await self.sessions.create_session(model)

    def switch_session(self, session_id: str) -> Session | None:
        return self.sessions.switch_session(session_id)

    async def delete_session(self, session_id: str) -> None:
        self.stop_generation(session_id)
        await self.sessions.delete_session(session_id)
        self._states.pop(session_id, None)
        self._errors.pop(session_id, None)

    def stop_generation(self, session_id: str | None = None) -> bool:
        """Signal the in-flight send of a session. False if none is active."""
        sid = self._resolve(session_id)
        token = self._tokens.get(sid or "")
        if token is None:
            return False
        token.cancel()
        logger.info("generation_stop_requested", session_id=sid)
        return True

    async def send_message(
        self,
        text: str,
        model: str | None = None,
        on_fragment: Callable[[str], Any] | None = None,
    ) -> GenerationResult:
        """Send user text in the current session and stream the reply.

        ``on_fragment`` is an optional UI hook called after each fragment has
        been applied to the assistant message.
        """
        session = self.sessions.current_session
        if session is None:
            error = str(NoActiveSessionError())
            logger.warning("send_without_session")
            return GenerationResult(state=GenerationState.FAILED, error=error)

        text = text.strip()
        if not text:
            raise ValueError("Cannot send an empty message")

        sid = session.id
        if sid in self._tokens:
            raise GenerationInProgressError(sid)

        token = CancellationToken()
        self._tokens[sid] = token
        self._errors[sid] = None
        self._states[sid] = GenerationState.SENDING

        assistant: Message | None = None
        errors: list[str] = []
        final_state = GenerationState.FAILED

        async def apply_fragment(fragment: str) -> None:
            if token.cancelled:
                return
            try:
                await self.sessions.append_to_message(assistant.id, fragment, session_id=sid)
            except PersistenceError as e:
                # In-memory content already grew; keep streaming
                if not errors:
                    errors.append(str(e))
            if on_fragment is not None:
                result = on_fragment(fragment)
                if inspect.isawaitable(result):
                    await result

        try:
            if not session.messages and not session.name:
                await self.sessions.rename_session(
                    sid, derive_session_name(text, self.name_words)
                )

            await self.sessions.add_message(Message(role=Role.USER, content=text), session_id=sid)
            prompt = build_prompt(self.sessions.get_relevant_context(text, session_id=sid))

            assistant = Message(role=Role.ASSISTANT, content="")
            await self.sessions.add_message(assistant, session_id=sid)

            self._states[sid] = GenerationState.STREAMING
            target_model = model or session.model
            logger.info("generation_started", session_id=sid, model=target_model)

            await self.client.generate(
                prompt,
                model=target_model,
                on_fragment=apply_fragment,
                cancellation=token,
            )
            final_state = GenerationState.COMPLETED

        except GenerationCancelled:
            final_state = GenerationState.CANCELLED
        except (GenerationError, PersistenceError) as e:
            final_state = GenerationState.FAILED
            errors.insert(0, str(e))
        finally:
            # Runs for unexpected errors too (e.g. a raising UI hook): the
            # session must end idle with no empty placeholder left behind
            self._tokens.pop(sid, None)
            self._states[sid] = final_state
            try:
                assistant = await self._finalize(sid, assistant)
            except PersistenceError as e:
                errors.append(str(e))
            self._errors[sid] = errors[0] if errors else None
            self._states[sid] = GenerationState.IDLE

        error = errors[0] if errors else None

        log = logger.warning if final_state == GenerationState.FAILED else logger.info
        log(
            f"generation_{final_state.value}",
            session_id=sid,
            chars=len(assistant.content) if assistant else 0,
            error=error,
        )
        return GenerationResult(
            state=final_state,
            session_id=sid,
            content=assistant.content if assistant else "",
            message=assistant,
            error=error,
        )

    async def _finalize(self, sid: str, assistant: Message | None) -> Message | None:
        """Leave the session consistent after a send ends.

        An assistant message that never received content is removed whatever
        the outcome; partial content is kept and the history trimmed if the
        reply pushed it over the threshold.
        """
        if self.sessions.get_session(sid) is None:
            # Deleted while streaming
            return assistant
        if assistant is None:
            return None

        if not assistant.content:
            await self.sessions.remove_message(assistant.id, session_id=sid)
            return None

        await self.sessions.update_message(assistant, session_id=sid)
        await self.sessions.trim_history(session_id=sid)
        return assistant
