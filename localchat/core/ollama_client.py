"""Streaming client for an Ollama-compatible generation server.

``POST /api/generate`` answers with newline-delimited JSON objects
(``{"model", "response", "done"}``) spread over arbitrary HTTP chunks.
``NDJSONDecoder`` reassembles lines across chunk boundaries and
``OllamaClient`` turns them into text fragments as they arrive.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import structlog

from localchat.config import OllamaConfig
from localchat.core.cancellation import CancellationToken
from localchat.core.errors import (
    GenerationCancelled,
    GenerationTimeout,
    ModelNotFoundError,
    StreamParseError,
    TransportError,
)

logger = structlog.get_logger()

FragmentCallback = Callable[[str], Any]


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    """Next body chunk, or None once the body is exhausted."""
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class NDJSONDecoder:
    """Incremental newline-delimited JSON decoder.

    ``feed`` accepts raw bytes (or already-decoded text) in any chunking and
    returns the objects completed by that chunk. A trailing partial line is
    held until the next ``feed`` or ``flush``. Malformed lines are logged and
    dropped without affecting their neighbours.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped = 0

    def feed(self, data: bytes | str) -> list[dict[str, Any]]:
        if isinstance(data, bytes):
            data = self._utf8.decode(data)
        self._buffer += data

        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever remains once the body is exhausted."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([tail])

    def _parse_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        objects: list[dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                objects.append(self._parse(line))
            except StreamParseError as e:
                self.skipped += 1
                logger.warning("stream_line_parse_failed", error=str(e))
        return objects

    @staticmethod
    def _parse(line: str) -> dict[str, Any]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise StreamParseError(line, e.msg) from e
        if not isinstance(data, dict):
            raise StreamParseError(line, "not an object")
        return data


class OllamaClient:
    """Issues generation requests and decodes their streamed responses."""

    def __init__(
        self,
        config: OllamaConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or OllamaConfig()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout),
            headers={"Content-Type": "application/json"},
        )

    @property
    def default_model(self) -> str:
        return self.config.default_model

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> OllamaClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    async def _until_cancelled(
        self, work: Awaitable[Any], cancellation: CancellationToken | None
    ) -> Any:
        """Await ``work`` unless the token fires first.

        A stop abandons the pending operation immediately instead of waiting
        for the server to send (or time out on) its next chunk.
        """
        if cancellation is None:
            return await work

        task = asyncio.ensure_future(work)
        stop = asyncio.ensure_future(cancellation.wait())
        try:
            await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise GenerationCancelled()
        return task.result()

    async def stream(
        self,
        prompt: str,
        model: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Yield response fragments in arrival order.

        Raises ``GenerationCancelled`` as soon as the token is cancelled:
        before the request, while waiting for the response headers, and
        while waiting for every chunk.
        """
        target_model = model or self.default_model
        payload = {"model": target_model, "prompt": prompt, "stream": True}

        if cancellation:
            cancellation.raise_if_cancelled()

        logger.debug("generate_request", model=target_model, prompt_chars=len(prompt))
        decoder = NDJSONDecoder()
        request = self._http.build_request("POST", self._url("/api/generate"), json=payload)
        try:
            response = await self._until_cancelled(
                self._http.send(request, stream=True), cancellation
            )
            try:
                if response.status_code == 404:
                    raise ModelNotFoundError(target_model)
                if not response.is_success:
                    await response.aread()
                    raise TransportError(
                        f"HTTP error! status: {response.status_code}",
                        status=response.status_code,
                    )

                chunks = response.aiter_bytes()
                while True:
                    chunk = await self._until_cancelled(_next_chunk(chunks), cancellation)
                    if chunk is None:
                        break
                    if cancellation and cancellation.cancelled:
                        raise GenerationCancelled()
                    for obj in decoder.feed(chunk):
                        fragment = obj.get("response")
                        if fragment:
                            yield fragment
                        if obj.get("done"):
                            return

                for obj in decoder.flush():
                    fragment = obj.get("response")
                    if fragment:
                        yield fragment
            finally:
                await response.aclose()

        except httpx.TimeoutException as e:
            if cancellation and cancellation.cancelled:
                raise GenerationCancelled() from e
            logger.warning("generate_timeout", model=target_model, error=str(e))
            raise GenerationTimeout() from e
        except httpx.HTTPError as e:
            if cancellation and cancellation.cancelled:
                raise GenerationCancelled() from e
            logger.warning("generate_transport_error", model=target_model, error=str(e))
            raise TransportError(str(e) or type(e).__name__) from e

    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        on_fragment: FragmentCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> str:
        """Run one generation and return the full text.

        ``on_fragment`` is called once per fragment, in order, before the
        next chunk is read; coroutine results are awaited. On cancellation
        the raised ``GenerationCancelled`` carries the text received so far.
        """
        parts: list[str] = []
        try:
            async with aclosing(
                self.stream(prompt, model=model, cancellation=cancellation)
            ) as fragments:
                async for fragment in fragments:
                    parts.append(fragment)
                    if on_fragment is not None:
                        result = on_fragment(fragment)
                        if inspect.isawaitable(result):
                            await result
                    if cancellation and cancellation.cancelled:
                        raise GenerationCancelled()
        except GenerationCancelled as e:
            e.partial = "".join(parts)
            logger.info("generate_cancelled", fragments=len(parts))
            raise
        return "".join(parts)

    async def list_models(self) -> list[str]:
        """Names of the models installed on the server."""
        try:
            resp = await self._http.get(self._url("/api/tags"))
        except httpx.TimeoutException as e:
            raise GenerationTimeout() from e
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e
        if not resp.is_success:
            raise TransportError(
                f"HTTP error! status: {resp.status_code}", status=resp.status_code
            )
        data = resp.json()
        return [m["name"] for m in data.get("models", []) if m.get("name")]

    async def check_status(self) -> dict[str, Any]:
        """Reachability summary for status displays. Never raises."""
        status: dict[str, Any] = {
            "is_responding": False,
            "status_code": None,
            "models": [],
            "default_model": self.default_model,
            "error": None,
        }
        try:
            resp = await self._http.get(self._url("/api/tags"), timeout=5)
            status["status_code"] = resp.status_code
            status["is_responding"] = resp.is_success
            if resp.is_success:
                status["models"] = [m.get("name", "") for m in resp.json().get("models", [])]
        except (httpx.HTTPError, ValueError) as e:
            status["error"] = str(e) or type(e).__name__
            logger.debug("status_check_failed", error=status["error"])
        return status
