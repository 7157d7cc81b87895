"""Context window: token accounting and eviction for one session.

Every change to a session's ``messages`` or to a message's ``content`` goes
through a ``ContextWindowManager`` so that ``session.total_tokens`` always
equals the sum of the messages' token counts.
"""

from __future__ import annotations

from typing import Callable

import structlog

from localchat.config import ContextWindowConfig
from localchat.core.tokens import TokenCounter
from localchat.core.types import Message, Session

logger = structlog.get_logger()

# Trimming never evicts below the latest exchange
_MIN_RETAINED_MESSAGES = 2

ContextSelector = Callable[[list[Message], "str | None"], list[Message]]


class RecentMessagesSelector:
    """Select the most recent ``window`` messages as conversation history."""

    def __init__(self, window: int = 5) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        self.window = window

    def __call__(self, messages: list[Message], query: str | None = None) -> list[Message]:
        return list(messages[-self.window:])


class ContextWindowManager:
    """Owns one session's message list and running token total."""

    def __init__(
        self,
        session: Session,
        config: ContextWindowConfig | None = None,
        counter: TokenCounter | None = None,
        selector: ContextSelector | None = None,
    ) -> None:
        self.session = session
        self.config = config or ContextWindowConfig()
        self.counter = counter or TokenCounter(self.config.encoding)
        self.selector = selector or RecentMessagesSelector(self.config.context_messages)

    # --- accounting ---

    def count_tokens(self, text: str) -> int:
        return self.counter.count(text)

    @property
    def current_token_count(self) -> int:
        return self.session.total_tokens

    @property
    def needs_summarization(self) -> bool:
        """True once the history is large enough that compaction would help.

        Nothing acts on this yet; it is surfaced for the UI.
        """
        return self.session.total_tokens >= self.config.summarization_threshold

    def recompute_total(self) -> int:
        """Count any uncounted messages and rebuild ``total_tokens`` from scratch.

        Only used when adopting a session loaded from storage.
        """
        for msg in self.session.messages:
            if msg.token_count is None:
                msg.token_count = self.count_tokens(msg.content)
        self.session.total_tokens = sum(m.token_count or 0 for m in self.session.messages)
        return self.session.total_tokens

    # --- mutation ---

    def add_message(self, message: Message) -> list[Message]:
        """Append a message and trim if the total reaches the threshold.

        Returns the messages evicted by trimming, oldest first.
        """
        if message.token_count is None:
            message.token_count = self.count_tokens(message.content)

        self.session.messages.append(message)
        self.session.total_tokens += message.token_count
        self.session.touch()

        if self.session.total_tokens >= self.config.trim_threshold:
            return self.trim_history()
        return []

    def trim_history(self) -> list[Message]:
        """Evict oldest messages until under the threshold or two remain."""
        evicted: list[Message] = []
        messages = self.session.messages
        while (
            self.session.total_tokens > self.config.trim_threshold
            and len(messages) > _MIN_RETAINED_MESSAGES
        ):
            removed = messages.pop(0)
            self.session.total_tokens -= removed.token_count or 0
            evicted.append(removed)

        if evicted:
            self.session.touch()
            logger.info(
                "context_trimmed",
                session_id=self.session.id,
                evicted=len(evicted),
                remaining=len(messages),
                total_tokens=self.session.total_tokens,
                threshold=self.config.trim_threshold,
            )
        return evicted

    def append_content(self, message_id: str, fragment: str) -> Message:
        """Grow a message in place and adjust the total by the token delta."""
        message = self.session.get_message(message_id)
        if message is None:
            raise KeyError(message_id)

        old_count = message.token_count or 0
        message.content += fragment
        message.token_count = self.count_tokens(message.content)
        self.session.total_tokens += message.token_count - old_count
        self.session.touch()
        return message

    def remove_message(self, message_id: str) -> Message | None:
        for i, msg in enumerate(self.session.messages):
            if msg.id == message_id:
                del self.session.messages[i]
                self.session.total_tokens -= msg.token_count or 0
                self.session.touch()
                return msg
        return None

    # --- context ---

    def get_relevant_context(self, query: str | None = None) -> list[Message]:
        """Messages to send to the backend as conversation history."""
        return self.selector(self.session.messages, query)
