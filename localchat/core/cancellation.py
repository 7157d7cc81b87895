"""Cooperative cancellation for in-flight generation requests."""

from __future__ import annotations

import asyncio

from localchat.core.errors import GenerationCancelled


class CancellationToken:
    """Signal shared between the requester and the streaming reader.

    The reader polls ``cancelled`` (or calls ``raise_if_cancelled``) between
    read iterations; the requester calls ``cancel()``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, partial: str = "") -> None:
        if self._event.is_set():
            raise GenerationCancelled(partial)

    async def wait(self) -> None:
        await self._event.wait()
