"""Response relay: buffered JSON documents and byte-exact SSE streams."""

from __future__ import annotations

import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

import anyio
import httpx
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from oauth_proxy.models import TapDelta

logger = logging.getLogger(__name__)

# Headers to not forward (hop-by-hop)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# httpx decodes the body, so the upstream content-encoding no longer applies
STRIP_RESPONSE_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding"})


def forwardable_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Upstream response headers minus hop-by-hop and stale encoding headers."""
    excluded = HOP_BY_HOP_HEADERS | STRIP_RESPONSE_HEADERS
    return {k: v for k, v in headers.items() if k.lower() not in excluded}


def is_event_stream(headers: Mapping[str, str]) -> bool:
    return "text/event-stream" in headers.get("content-type", "")


def extract_delta(data: str) -> TapDelta | None:
    """Pull the answer or reasoning delta out of one SSE `data:` payload."""
    parsed = json.loads(data)
    if not isinstance(parsed, dict) or parsed.get("type") != "content_block_delta":
        return None
    delta = parsed.get("delta") or {}
    if delta.get("type") == "text_delta":
        return TapDelta(text=delta.get("text", ""))
    if delta.get("type") == "thinking_delta":
        return TapDelta(thinking=delta.get("thinking", ""))
    return None


class StreamObserver(ABC):
    """Read-only consumer of a relayed stream.

    Observers may fail; the relay suppresses anything they raise.
    """

    @abstractmethod
    def on_delta(self, delta: TapDelta) -> None:
        """Receive one extracted text or thinking delta."""

    def on_chunk(self, chunk: bytes) -> None:
        """Receive each raw chunk as it is relayed."""

    def on_close(self) -> None:
        """Called once when the relay finishes, however it finishes."""


class StreamTap:
    """Splits relayed chunks into SSE lines and feeds parsed deltas to an observer.

    Partial lines are buffered across chunks. Lines that are not JSON are
    skipped.
    """

    def __init__(self, observer: StreamObserver) -> None:
        self._observer = observer
        self._buffer = ""
        self._deltas = 0

    @property
    def delta_count(self) -> int:
        return self._deltas

    def feed(self, chunk: bytes) -> None:
        self._observer.on_chunk(chunk)
        self._buffer += chunk.decode("utf-8", errors="replace")

        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            line = line.strip()
            if not line.startswith("data:"):
                # Ignore event:, id:, retry:, blank separators
                continue
            data = line[5:].strip()
            if not data:
                continue
            try:
                delta = extract_delta(data)
            except (json.JSONDecodeError, AttributeError):
                continue
            if delta is not None:
                self._deltas += 1
                self._observer.on_delta(delta)

    def close(self) -> None:
        self._observer.on_close()


class RelayStreamingResponse(StreamingResponse):
    """StreamingResponse that closes the upstream as soon as the ASGI call ends.

    This covers client disconnects, where the body iterator is abandoned
    mid-stream instead of being exhausted.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        *,
        on_close: Callable[[], Awaitable[None]],
        **kwargs: object,
    ) -> None:
        super().__init__(content, **kwargs)  # type: ignore[arg-type]
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


ObserverFactory = Callable[[], StreamObserver | None]


class StreamRelay:
    """Copies an upstream response to the client.

    Event streams are forwarded chunk by chunk in arrival order; anything else
    is read fully and re-serialized as compact JSON when it parses.
    """

    def __init__(self, observer_factory: ObserverFactory | None = None) -> None:
        self._observer_factory = observer_factory

    async def relay(self, upstream: httpx.Response) -> Response:
        if is_event_stream(upstream.headers):
            return await self._relay_stream(upstream)
        return await self._relay_buffered(upstream)

    async def _relay_buffered(self, upstream: httpx.Response) -> Response:
        try:
            body = await upstream.aread()
        except httpx.HTTPError as e:
            logger.error("Failed to read upstream response body: %s", e)
            return JSONResponse({"error": "Failed to read response"}, status_code=500)
        finally:
            await upstream.aclose()

        headers = forwardable_headers(upstream.headers)
        try:
            document = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("Raw response sent back to client (%d bytes)", len(body))
            return Response(content=body, status_code=upstream.status_code, headers=headers)

        headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}
        logger.debug("Non-streaming response sent back to client")
        return Response(
            content=json.dumps(document, separators=(",", ":"), ensure_ascii=False),
            status_code=upstream.status_code,
            headers=headers,
            media_type="application/json",
        )

    async def _relay_stream(self, upstream: httpx.Response) -> Response:
        chunks = upstream.aiter_bytes()

        # Read the first chunk before any status line goes out
        try:
            first = await anext(chunks)
        except StopAsyncIteration:
            first = b""
        except httpx.HTTPError as e:
            logger.error("Upstream stream failed before first byte: %s", e)
            await upstream.aclose()
            return JSONResponse({"error": "Upstream response error"}, status_code=500)

        tap = self._make_tap()
        closed = False

        async def close() -> None:
            nonlocal closed
            if closed:
                return
            closed = True
            with anyio.CancelScope(shield=True):
                await upstream.aclose()
            if tap is not None:
                logger.debug("Stream tap saw %d deltas", tap.delta_count)
                with contextlib.suppress(Exception):
                    tap.close()

        async def stream_body() -> AsyncIterator[bytes]:
            try:
                if first:
                    _observe(tap, first)
                    yield first
                async for chunk in chunks:
                    _observe(tap, chunk)
                    yield chunk
                logger.debug("Streaming response sent back to client")
            except httpx.HTTPError as e:
                # Headers are already out; all we can do is end the stream
                logger.error("Upstream stream failed mid-response: %s", e)
            finally:
                await close()

        return RelayStreamingResponse(
            stream_body(),
            on_close=close,
            status_code=upstream.status_code,
            headers=forwardable_headers(upstream.headers),
        )

    def _make_tap(self) -> StreamTap | None:
        if self._observer_factory is None:
            return None
        with contextlib.suppress(Exception):
            observer = self._observer_factory()
            if observer is not None:
                return StreamTap(observer)
        return None


def _observe(tap: StreamTap | None, chunk: bytes) -> None:
    if tap is None:
        return
    with contextlib.suppress(Exception):
        tap.feed(chunk)
