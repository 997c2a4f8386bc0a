"""Caching symbol proxy in front of an S3 symbol store."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from typing import Optional
from uuid import uuid4

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from opentelemetry import trace

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import SymbolProxySettings
from .forwarding import ForwardingProxy, OutboundRequest, UpstreamError, UpstreamResponse, request_raw_path
from .paths import derive_cache_key, normalize_request_path
from .store import DiskCacheStore


LOGGER = structlog.get_logger("symserver.symbol_proxy")
TRACER = trace.get_tracer("symserver.symbol_proxy")

LIVENESS_PATH = "/health"
METRICS_PATH = "/metrics"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CACHEABLE_METHODS = frozenset({"GET", "HEAD"})
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET",
}

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("symserver_requests_total", "Symbol requests received"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("symserver_cache_hits_total", "Symbol requests served from disk"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("symserver_cache_misses_total", "Symbol requests forwarded upstream"))
UPSTREAM_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symserver_upstream_errors_total", "Upstream exchanges that failed before a response")
)
NOT_FOUND_REMAPS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symserver_upstream_403_remapped_total", "Upstream 403 responses rewritten to 404")
)
CACHE_WRITES_COUNTER = GLOBAL_REGISTRY.register(Counter("symserver_cache_writes_total", "Cache entries stored"))
CACHE_WRITE_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symserver_cache_write_failures_total", "Responses that could not be stored")
)
CACHE_FULL_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symserver_cache_admissions_refused_total", "Responses not cached because the cache was full")
)
ENTRIES_GAUGE = GLOBAL_REGISTRY.register(Gauge("symserver_cache_entries", "Live cache entries"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "symserver_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Symbol request latency",
    )
)


class SymbolProxyState:
    def __init__(self, settings: SymbolProxySettings, store: DiskCacheStore, forwarder: ForwardingProxy):
        self.settings = settings
        self.store = store
        self.forwarder = forwarder
        self.logger = LOGGER.bind(upstream=settings.upstream_host)
        self._pending_writes: set[asyncio.Task] = set()

    def canonical_path(self, raw_path: str) -> str:
        return normalize_request_path(raw_path, self.settings.path_prefix, self.settings.app_aliases)

    def schedule_finalize(self, cache_key: str, response: UpstreamResponse) -> asyncio.Task:
        body = response.subscribe()
        task = asyncio.create_task(
            self._finalize(cache_key, response.status_code, dict(response.headers), body),
            name=f"symserver-finalize-{cache_key[:12]}",
        )
        self._pending_writes.add(task)
        task.add_done_callback(self._finalize_done)
        return task

    async def _finalize(self, cache_key: str, status_code: int, headers: dict[str, str], body) -> bool:
        with TRACER.start_as_current_span(
            "symbol_proxy.finalize",
            attributes={"symserver.cache_key": cache_key, "http.status_code": status_code},
        ) as span:
            stored = await self.store.finalize(cache_key, status_code, headers, body)
            span.set_attribute("symserver.stored", stored)
        if stored:
            CACHE_WRITES_COUNTER.inc()
        else:
            CACHE_WRITE_FAILURES_COUNTER.inc()
        return stored

    def _finalize_done(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            CACHE_WRITE_FAILURES_COUNTER.inc()
            self.logger.error("cache_finalize_crashed", task=task.get_name(), error=repr(exc), exc_info=exc)

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)

    async def wait_for_pending_writes(self) -> None:
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def sweep_forever(self) -> None:
        interval = max(1.0, self.settings.sweep_interval_seconds)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.store.sweep_expired()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("cache_sweep_failed", error=repr(exc), exc_info=exc)


def get_state(request: Request) -> SymbolProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def error_response(request: Request, exc: BaseException, issue_tracker_url: str) -> PlainTextResponse:
    error_id = str(uuid4())
    LOGGER.error(
        "request_failed",
        error_id=error_id,
        method=request.method,
        url=str(request.url),
        error=repr(exc),
        exc_info=exc,
    )
    return PlainTextResponse(
        "Something went wrong. If this happens consistently please report to "
        f'{issue_tracker_url} with this error ID: "{error_id}"',
        status_code=500,
    )


def create_app(
    settings: Optional[SymbolProxySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or SymbolProxySettings()
    configure_logging("symserver.symbol_proxy", settings.log_level, json_logs=settings.log_json)
    configure_tracing(
        service_name="symserver.symbol_proxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    store = DiskCacheStore(
        settings.cache_directory,
        hit_ttl_seconds=settings.hit_ttl_seconds,
        miss_ttl_seconds=settings.miss_ttl_seconds,
        max_entries=settings.max_cache_entries,
    )
    ENTRIES_GAUGE.bind(store.live_entries)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.prepare()
        client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(settings.upstream_timeout_seconds),
            follow_redirects=False,
        )
        state = SymbolProxyState(settings, store, ForwardingProxy(client, settings.upstream_base_url))
        app.state.proxy_state = state
        sweeper = asyncio.create_task(state.sweep_forever(), name="symserver-cache-sweeper")
        state.logger.info(
            "symbol_proxy_started",
            cache_directory=str(store.directory),
            path_prefix=settings.path_prefix,
            max_entries=store.max_entries,
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            await state.wait_for_pending_writes()
            await client.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError) -> PlainTextResponse:
        UPSTREAM_ERRORS_COUNTER.inc()
        return error_response(request, exc, settings.issue_tracker_url)

    @app.middleware("http")
    async def fault_boundary(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            response = error_response(request, exc, settings.issue_tracker_url)

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        response.headers.update(CORS_HEADERS)

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.api_route(LIVENESS_PATH, methods=["GET", "HEAD"], response_class=PlainTextResponse)
    async def liveness() -> PlainTextResponse:
        return PlainTextResponse("Alive")

    @app.get(METRICS_PATH, response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: SymbolProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{symbol_path:path}", methods=PROXY_METHODS)
    async def serve_symbol(request: Request, state: SymbolProxyState = Depends(get_state)) -> Response:
        REQUEST_COUNTER.inc()
        canonical_path = state.canonical_path(request_raw_path(request))
        cache_key = derive_cache_key(canonical_path)

        if request.method in CACHEABLE_METHODS:
            with TRACER.start_as_current_span(
                "symbol_proxy.lookup",
                attributes={"symserver.cache_key": cache_key, "symserver.path": canonical_path},
            ) as span:
                entry = await state.store.lookup(cache_key)
                span.set_attribute("symserver.cache_hit", entry is not None)
            if entry is not None:
                HIT_COUNTER.inc()
                state.logger.info("cache_hit", cache_key=cache_key, path=canonical_path, status=entry.status)
                if request.method == "HEAD":
                    await entry.close()
                    return Response(status_code=entry.status, headers=entry.headers)
                return StreamingResponse(entry.iter_body(), status_code=entry.status, headers=entry.headers)

        MISS_COUNTER.inc()
        state.logger.info("cache_miss", cache_key=cache_key, path=canonical_path, method=request.method)

        def rewrite_outbound(outbound: OutboundRequest) -> None:
            outbound.path = canonical_path
            # S3 determines the bucket from the Host header
            outbound.headers["host"] = state.settings.upstream_host

        def capture_response(upstream: UpstreamResponse) -> None:
            # S3 answers 403 for missing keys, and symsrv.dll blacklists a
            # server for the whole debugging session after a 403.
            if upstream.status_code == 403:
                upstream.status_code = 404
                NOT_FOUND_REMAPS_COUNTER.inc()
            if request.method != "GET":
                return
            if not state.store.reserve_capacity():
                CACHE_FULL_COUNTER.inc()
                state.logger.info("cache_full", cache_key=cache_key, max_entries=state.store.max_entries)
                return
            state.schedule_finalize(cache_key, upstream)

        with TRACER.start_as_current_span(
            "symbol_proxy.forward",
            attributes={"symserver.cache_key": cache_key, "symserver.path": canonical_path},
        ):
            return await state.forwarder.forward(
                request,
                before_dispatch=rewrite_outbound,
                after_response=capture_response,
            )

    return app
