"""Token counting with tiktoken.

One ``TokenCounter`` instance must be shared by everything that touches a
session's ``total_tokens``: mixing schemes silently breaks the running total.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any

import structlog
import tiktoken

logger = structlog.get_logger()

DEFAULT_ENCODING = "cl100k_base"

# Heuristic used when the BPE file cannot be loaded: ~4 characters per token
_CHARS_PER_TOKEN = 4


class TokenCounter:
    """Deterministic text -> token count.

    The encoding is loaded on first use. If loading fails the instance falls
    back to a character heuristic for the rest of its lifetime, so every
    count it ever returns comes from the same scheme.
    """

    def __init__(self, encoding_name: str = DEFAULT_ENCODING) -> None:
        self.encoding_name = encoding_name
        self._encoding: Any = None
        self._fallback = False

    @property
    def scheme(self) -> str:
        if self._fallback:
            return "chars/4"
        return self.encoding_name

    def _load(self) -> None:
        try:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        except (ValueError, OSError) as e:
            # Unknown encoding, or the BPE download/cache failed
            logger.warning(
                "token_encoding_unavailable",
                encoding=self.encoding_name,
                error=str(e),
            )
            self._fallback = True

    async def preload(self) -> None:
        """Load the encoding off the event loop.

        The first load may download the BPE file; doing it here keeps that
        out of the first send.
        """
        if self._encoding is None and not self._fallback:
            await asyncio.to_thread(self._load)

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None and not self._fallback:
            self._load()
        if self._fallback:
            return math.ceil(len(text) / _CHARS_PER_TOKEN)
        return len(self._encoding.encode(text, disallowed_special=()))

    __call__ = count

