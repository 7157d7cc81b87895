"""Tests for ContextWindowManager and RecentMessagesSelector."""

from __future__ import annotations

import pytest

from localchat.config import ContextWindowConfig
from localchat.core.memory.context import ContextWindowManager, RecentMessagesSelector
from localchat.core.types import Message, Role, Session


class WordCounter:
    """One token per whitespace-separated word."""

    def count(self, text: str) -> int:
        return len(text.split())


def words(n: int) -> str:
    return " ".join(["w"] * n)


def make_manager(
    trim_threshold: int = 10,
    max_tokens: int = 20,
    summarization_threshold: int = 8,
    context_messages: int = 5,
) -> ContextWindowManager:
    config = ContextWindowConfig(
        max_tokens=max_tokens,
        trim_threshold=trim_threshold,
        summarization_threshold=summarization_threshold,
        context_messages=context_messages,
    )
    return ContextWindowManager(Session(model="test"), config=config, counter=WordCounter())


def assert_total_consistent(ctx: ContextWindowManager) -> None:
    assert ctx.session.total_tokens == sum(m.token_count for m in ctx.session.messages)


# =============================================================
# Accounting
# =============================================================

class TestAccounting:
    """Running total tracks the sum of message token counts."""

    def test_add_message_counts_tokens(self):
        ctx = make_manager()
        msg = Message(role=Role.USER, content=words(3))
        evicted = ctx.add_message(msg)
        assert evicted == []
        assert msg.token_count == 3
        assert ctx.current_token_count == 3
        assert_total_consistent(ctx)

    def test_precounted_message_not_recounted(self):
        ctx = make_manager()
        msg = Message(role=Role.USER, content=words(3), token_count=7)
        ctx.add_message(msg)
        assert ctx.current_token_count == 7

    def test_add_message_touches_session(self):
        ctx = make_manager()
        before = ctx.session.updated_at
        ctx.add_message(Message(role=Role.USER, content="hi"))
        assert ctx.session.updated_at >= before

    def test_append_content_applies_delta(self):
        ctx = make_manager(trim_threshold=100, max_tokens=200)
        ctx.add_message(Message(role=Role.USER, content=words(2)))
        reply = Message(role=Role.ASSISTANT, content="")
        ctx.add_message(reply)
        assert reply.token_count == 0

        ctx.append_content(reply.id, "Hel")
        ctx.append_content(reply.id, "lo")
        assert reply.content == "Hello"
        assert reply.token_count == 1
        assert ctx.current_token_count == 3

        ctx.append_content(reply.id, " there friend")
        assert reply.token_count == 3
        assert ctx.current_token_count == 5
        assert_total_consistent(ctx)

    def test_append_content_unknown_id(self):
        ctx = make_manager()
        with pytest.raises(KeyError):
            ctx.append_content("missing", "x")

    def test_remove_message(self):
        ctx = make_manager()
        keep = Message(role=Role.USER, content=words(2))
        drop = Message(role=Role.ASSISTANT, content=words(3))
        ctx.add_message(keep)
        ctx.add_message(drop)

        assert ctx.remove_message(drop.id) is drop
        assert ctx.session.messages == [keep]
        assert ctx.current_token_count == 2
        assert ctx.remove_message(drop.id) is None
        assert_total_consistent(ctx)

    def test_recompute_total_counts_loaded_messages(self):
        ctx = make_manager()
        ctx.session.messages = [
            Message(role=Role.USER, content=words(2)),
            Message(role=Role.ASSISTANT, content=words(4), token_count=4),
        ]
        ctx.session.total_tokens = 999
        assert ctx.recompute_total() == 6
        assert ctx.session.messages[0].token_count == 2

    def test_needs_summarization(self):
        ctx = make_manager(trim_threshold=10, summarization_threshold=5)
        ctx.add_message(Message(role=Role.USER, content=words(4)))
        assert ctx.needs_summarization is False
        ctx.add_message(Message(role=Role.ASSISTANT, content=words(1)))
        assert ctx.needs_summarization is True


# =============================================================
# Trimming
# =============================================================

class TestTrimming:
    """Oldest messages are evicted once the threshold is reached."""

    def test_trims_oldest_first(self):
        ctx = make_manager(trim_threshold=10)
        first = Message(role=Role.USER, content=words(4))
        second = Message(role=Role.ASSISTANT, content=words(4))
        third = Message(role=Role.USER, content=words(4))
        ctx.add_message(first)
        ctx.add_message(second)
        evicted = ctx.add_message(third)

        assert evicted == [first]
        assert ctx.session.messages == [second, third]
        assert ctx.current_token_count == 8
        assert_total_consistent(ctx)

    def test_total_at_threshold_is_kept(self):
        ctx = make_manager(trim_threshold=10)
        for _ in range(2):
            ctx.add_message(Message(role=Role.USER, content=words(3)))
        evicted = ctx.add_message(Message(role=Role.USER, content=words(4)))
        assert evicted == []
        assert ctx.current_token_count == 10

    def test_never_trims_below_two_messages(self):
        ctx = make_manager(trim_threshold=10)
        ctx.add_message(Message(role=Role.USER, content=words(8)))
        evicted = ctx.add_message(Message(role=Role.ASSISTANT, content=words(8)))
        assert evicted == []
        assert len(ctx.session.messages) == 2
        assert ctx.current_token_count == 16

    def test_each_eviction_subtracted_once(self):
        ctx = make_manager(trim_threshold=10)
        for n in (3, 3, 3, 3):
            ctx.add_message(Message(role=Role.USER, content=words(n)))
        # 3+3+3 = 9, then 12 -> evict one -> 9
        assert ctx.current_token_count == 9
        assert len(ctx.session.messages) == 3
        assert_total_consistent(ctx)

    def test_explicit_trim_after_growth(self):
        ctx = make_manager(trim_threshold=10)
        ctx.add_message(Message(role=Role.USER, content=words(3)))
        ctx.add_message(Message(role=Role.ASSISTANT, content=words(3)))
        ctx.add_message(Message(role=Role.USER, content=words(2)))
        reply = Message(role=Role.ASSISTANT, content="")
        ctx.add_message(reply)

        ctx.append_content(reply.id, words(6))
        assert ctx.current_token_count == 14  # growth never trims by itself

        evicted = ctx.trim_history()
        assert len(evicted) == 2
        assert ctx.current_token_count == 8
        assert ctx.session.messages[-1] is reply
        assert_total_consistent(ctx)

    def test_trim_history_noop_under_threshold(self):
        ctx = make_manager()
        ctx.add_message(Message(role=Role.USER, content="hi"))
        assert ctx.trim_history() == []


# =============================================================
# Context selection
# =============================================================

class TestContextSelection:
    """History sent to the backend."""

    def test_selector_returns_last_window(self):
        selector = RecentMessagesSelector(window=2)
        msgs = [Message(role=Role.USER, content=str(i)) for i in range(4)]
        assert [m.content for m in selector(msgs)] == ["2", "3"]

    def test_selector_shorter_history(self):
        selector = RecentMessagesSelector(window=5)
        msgs = [Message(role=Role.USER, content="only")]
        assert selector(msgs, "query") == msgs

    def test_selector_rejects_non_positive_window(self):
        with pytest.raises(ValueError):
            RecentMessagesSelector(window=0)

    def test_relevant_context_uses_configured_window(self):
        ctx = make_manager(trim_threshold=100, max_tokens=200, context_messages=3)
        for i in range(6):
            ctx.add_message(Message(role=Role.USER, content=f"m{i}"))
        assert [m.content for m in ctx.get_relevant_context("q")] == ["m3", "m4", "m5"]

    def test_relevant_context_is_a_copy(self):
        ctx = make_manager()
        ctx.add_message(Message(role=Role.USER, content="hi"))
        selected = ctx.get_relevant_context()
        selected.clear()
        assert len(ctx.session.messages) == 1

    def test_custom_selector(self):
        ctx = ContextWindowManager(
            Session(model="test"),
            counter=WordCounter(),
            selector=lambda messages, query: [m for m in messages if query in m.content],
        )
        ctx.add_message(Message(role=Role.USER, content="apples"))
        ctx.add_message(Message(role=Role.USER, content="pears"))
        assert [m.content for m in ctx.get_relevant_context("pear")] == ["pears"]
