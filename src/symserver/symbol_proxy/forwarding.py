"""Generic streaming reverse proxy with pre-dispatch and post-response hooks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Mapping, Optional
from urllib.parse import quote

import httpx
import structlog
from fastapi import Request
from fastapi.responses import StreamingResponse


LOGGER = structlog.get_logger("symserver.symbol_proxy.forwarding")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "DELETE"})


class UpstreamError(Exception):
    """The upstream exchange failed before a response could be relayed."""

    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.url = url


class UpstreamStreamAborted(Exception):
    """The live body stream ended before the upstream finished sending it."""


def request_raw_path(request: Request) -> str:
    """Path of the inbound request with its original percent-encoding."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return quote(request.url.path)


def filter_headers(headers: Mapping[str, str], *, drop: frozenset[str] = frozenset()) -> dict[str, str]:
    result: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered in drop:
            continue
        result[lowered] = value
    return result


@dataclass
class OutboundRequest:
    method: str
    path: str
    query: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path


class _StreamEnd:
    __slots__ = ("error",)

    def __init__(self, error: Optional[BaseException]) -> None:
        self.error = error


class UpstreamResponse:
    """Status and headers of an upstream reply, with fan-out access to its body.

    Hooks may rewrite ``status_code`` and ``headers`` before they reach the
    client. Each :meth:`subscribe` call returns an independent async iterator
    over the body chunks relayed to the client; it raises
    :class:`UpstreamStreamAborted` if the relay stops early. Closing a
    subscription with ``aclose()`` stops it from buffering further chunks.
    """

    def __init__(self, status_code: int, headers: dict[str, str]) -> None:
        self.status_code = status_code
        self.headers = headers
        self._subscribers: list[asyncio.Queue] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> "BodySubscription":
        # Unbounded so a slow subscriber never holds back the client stream.
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return BodySubscription(self, queue)

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, chunk: bytes) -> None:
        for queue in self._subscribers:
            queue.put_nowait(chunk)

    def close(self, error: Optional[BaseException] = None) -> None:
        for queue in self._subscribers:
            queue.put_nowait(_StreamEnd(error))
        self._subscribers.clear()


class BodySubscription:
    def __init__(self, response: UpstreamResponse, queue: asyncio.Queue) -> None:
        self._response = response
        self._queue = queue

    def __aiter__(self) -> "BodySubscription":
        return self

    async def __anext__(self) -> bytes:
        item = await self._queue.get()
        if isinstance(item, _StreamEnd):
            if item.error is not None:
                raise UpstreamStreamAborted(repr(item.error))
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        self._response.unsubscribe(self._queue)
        self._queue = asyncio.Queue()
        self._queue.put_nowait(_StreamEnd(None))


PreDispatchHook = Callable[[OutboundRequest], None]
PostResponseHook = Callable[[UpstreamResponse], None]


class ForwardingProxy:
    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def forward(
        self,
        request: Request,
        *,
        before_dispatch: Optional[PreDispatchHook] = None,
        after_response: Optional[PostResponseHook] = None,
    ) -> StreamingResponse:
        outbound = OutboundRequest(
            method=request.method,
            path=request_raw_path(request),
            query=request.url.query,
            headers=filter_headers(request.headers, drop=frozenset({"host"})),
        )
        if before_dispatch is not None:
            before_dispatch(outbound)

        content = None if outbound.method in BODYLESS_METHODS else request.stream()
        upstream_request = self._client.build_request(
            outbound.method,
            f"{self._base_url}{outbound.target}",
            headers=outbound.headers,
            content=content,
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamError(str(exc) or exc.__class__.__name__, url=str(upstream_request.url)) from exc

        response = UpstreamResponse(upstream.status_code, filter_headers(upstream.headers))
        if after_response is not None:
            try:
                after_response(response)
            except Exception:
                response.close(RuntimeError("post-response hook failed"))
                await upstream.aclose()
                raise

        LOGGER.debug(
            "upstream_response",
            method=outbound.method,
            url=str(upstream_request.url),
            upstream_status=upstream.status_code,
            status=response.status_code,
        )
        return StreamingResponse(
            _relay(upstream, response),
            status_code=response.status_code,
            headers=response.headers,
        )


async def _relay(upstream: httpx.Response, response: UpstreamResponse) -> AsyncIterator[bytes]:
    # Raw bytes: cached bodies must match the content-encoding header stored with them.
    error: Optional[BaseException] = None
    try:
        async for chunk in upstream.aiter_raw():
            response.publish(chunk)
            yield chunk
    except httpx.HTTPError as exc:
        error = exc
        LOGGER.warning("upstream_stream_interrupted", url=str(upstream.url), error=str(exc))
        raise
    except BaseException as exc:
        # Client went away or the task was cancelled mid-stream.
        error = exc
        raise
    finally:
        response.close(error)
        await upstream.aclose()
