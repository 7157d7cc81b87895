"""Tests for TokenCounter."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from localchat.core.tokens import DEFAULT_ENCODING, TokenCounter


class TestTokenCounter:
    """Counting behaviour shared by both schemes."""

    def test_empty_string_is_zero(self):
        assert TokenCounter().count("") == 0

    def test_deterministic(self):
        counter = TokenCounter()
        text = "The quick brown fox jumps over the lazy dog."
        assert counter.count(text) == counter.count(text)
        assert counter.count(text) > 0

    def test_callable(self):
        counter = TokenCounter()
        assert counter("hello world") == counter.count("hello world")

    def test_special_token_text_does_not_raise(self):
        counter = TokenCounter()
        assert counter.count("<|endoftext|> and <|fim_prefix|>") > 0

    def test_longer_text_counts_more(self):
        counter = TokenCounter()
        short = counter.count("hello")
        long = counter.count("hello " * 50)
        assert long > short

    def test_default_scheme(self):
        with patch("localchat.core.tokens.tiktoken.get_encoding") as get_encoding:
            get_encoding.return_value.encode.return_value = [1, 2, 3]
            counter = TokenCounter()
            assert counter.count("abc") == 3
            assert counter.scheme == DEFAULT_ENCODING


class TestTokenCounterFallback:
    """Behaviour when the encoding cannot be loaded."""

    def test_falls_back_to_char_heuristic(self):
        with patch(
            "localchat.core.tokens.tiktoken.get_encoding",
            side_effect=ConnectionError("no network"),
        ):
            counter = TokenCounter()
            assert counter.count("abcdefgh") == 2
            assert counter.count("abcde") == 2  # rounds up
            assert counter.count("") == 0
            assert counter.scheme == "chars/4"

    def test_fallback_is_sticky(self):
        with patch(
            "localchat.core.tokens.tiktoken.get_encoding",
            side_effect=ConnectionError("no network"),
        ) as get_encoding:
            counter = TokenCounter()
            counter.count("one")
            counter.count("two")
            assert get_encoding.call_count == 1

    def test_encoding_loaded_lazily(self):
        with patch("localchat.core.tokens.tiktoken.get_encoding") as get_encoding:
            counter = TokenCounter()
            get_encoding.assert_not_called()
            counter.count("")
            get_encoding.assert_not_called()

    def test_unknown_encoding_falls_back(self):
        with patch(
            "localchat.core.tokens.tiktoken.get_encoding",
            side_effect=ValueError("Unknown encoding no_such_encoding"),
        ):
            counter = TokenCounter("no_such_encoding")
            assert counter.count("abcd") == 1

    def test_unexpected_errors_propagate(self):
        with patch(
            "localchat.core.tokens.tiktoken.get_encoding",
            side_effect=RuntimeError("bug"),
        ):
            counter = TokenCounter()
            with pytest.raises(RuntimeError):
                counter.count("text")


class TestPreload:
    """Loading the encoding ahead of the first count."""

    @pytest.mark.asyncio
    async def test_preload_loads_once(self):
        with patch("localchat.core.tokens.tiktoken.get_encoding") as get_encoding:
            get_encoding.return_value.encode.return_value = [1, 2]
            counter = TokenCounter()
            await counter.preload()
            assert get_encoding.call_count == 1

            assert counter.count("ab") == 2
            await counter.preload()
            assert get_encoding.call_count == 1

    @pytest.mark.asyncio
    async def test_preload_failure_selects_fallback(self):
        with patch(
            "localchat.core.tokens.tiktoken.get_encoding",
            side_effect=OSError("cache unreadable"),
        ):
            counter = TokenCounter()
            await counter.preload()
            assert counter.scheme == "chars/4"
            assert counter.count("abcdefgh") == 2
