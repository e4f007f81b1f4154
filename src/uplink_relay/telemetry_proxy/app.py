"""FastAPI service proxying stored LoRaWAN uplinks to the dashboard."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from typing import Callable, Optional

import httpx
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import CacheHealth, CacheStats, HealthStatus, SecretHealth
from ..common.settings import TelemetryProxySettings
from .handler import DATA_PATH, ProxyHandler
from .response_cache import ResponseCache
from .secrets import SecretCache, SecretStore, build_secret_store
from .stream import StreamParser
from .upstream import UpstreamClient


LOGGER = structlog.get_logger("uplink_relay.telemetry_proxy")

SERVICE_NAME = "uplink_relay.telemetry_proxy"
CLIENT_CLOSED_REQUEST = 499

HTTP_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_http_requests_total", "Total HTTP requests served by the proxy")
)
HTTP_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "uplink_relay_http_request_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 30.0],
        description="Latency of proxy HTTP requests",
    )
)
ABORTED_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_aborted_requests_total", "Data requests abandoned by the client before completion")
)
CACHE_KEYS_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("uplink_relay_response_cache_keys", "Live entries in the response cache")
)


class RelayState:
    def __init__(
        self,
        settings: TelemetryProxySettings,
        http_client: httpx.AsyncClient,
        secret_store: Optional[SecretStore],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.http = http_client
        self.secrets = SecretCache(
            secret_store,
            settings.secret_name,
            settings.secret_ttl_seconds,
            clock=clock,
        )
        self.cache = ResponseCache(settings.response_cache_ttl, clock=clock)
        self.upstream = UpstreamClient.from_settings(http_client, settings)
        self.handler = ProxyHandler(self.secrets, self.upstream, self.cache, StreamParser())
        self.sweeper: Optional[asyncio.Task] = None

    def start_sweeper(self) -> None:
        if self.cache.enabled and self.settings.response_cache_sweep_seconds > 0:
            self.sweeper = asyncio.create_task(self.cache.run_sweeper(self.settings.response_cache_sweep_seconds))

    async def stop_sweeper(self) -> None:
        if self.sweeper is None:
            return
        self.sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await self.sweeper
        self.sweeper = None


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


def get_state(request: Request) -> RelayState:
    return request.app.state.relay  # type: ignore[attr-defined]


def create_app(
    settings: Optional[TelemetryProxySettings] = None,
    *,
    secret_store: Optional[SecretStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    """Build the proxy app.

    ``secret_store`` and ``transport`` replace the Secrets Manager client and
    the upstream network transport; both default to the real ones derived
    from ``settings``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or TelemetryProxySettings()
        configure_logging(SERVICE_NAME, resolved.log_level)
        configure_tracing(SERVICE_NAME, resolved)
        store = secret_store if secret_store is not None else build_secret_store(resolved)
        if store is None:
            if resolved.strict_secret_store:
                raise RuntimeError("UPLINK_RELAY_SECRET_STORE_REGION must be set when strict secret store mode is on")
            LOGGER.warning("Secret store not configured; every data request will fail with 502")

        http_client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(resolved.upstream_timeout_seconds),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )
        state = RelayState(resolved, http_client, store, clock=clock)
        app.state.relay = state
        state.start_sweeper()
        LOGGER.info(
            "Telemetry proxy started",
            upstream_variant=resolved.upstream_variant,
            auth_scheme=resolved.auth_scheme,
            app_id=resolved.upstream_app_id,
            response_cache_ttl=resolved.response_cache_ttl,
        )
        try:
            yield
        finally:
            await state.stop_sweeper()
            await http_client.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_request_metrics(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        HTTP_REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            HTTP_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        HTTP_LATENCY_HISTOGRAM.observe(duration)
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

    @app.get(DATA_PATH)
    async def get_data(request: Request, state: RelayState = Depends(get_state)) -> Response:
        params = request.query_params.multi_items()
        task = asyncio.create_task(state.handler.handle(params, path=DATA_PATH))
        watcher = asyncio.create_task(_wait_for_disconnect(request))
        try:
            await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            watcher.cancel()
            raise
        if not task.done() and watcher.exception() is not None:
            LOGGER.warning("Disconnect watcher failed", error=str(watcher.exception()))
            await task
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            ABORTED_REQUEST_COUNTER.inc()
            LOGGER.info("Client disconnected; upstream call cancelled", path=DATA_PATH)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher

        result = task.result()
        headers = {"X-Cache": "HIT" if result.cached else "MISS"} if result.ok else None
        return JSONResponse(result.payload(), status_code=result.status_code, headers=headers)

    @app.get("/health", status_code=status.HTTP_200_OK)
    async def health_check(state: RelayState = Depends(get_state)) -> HealthStatus:
        """Diagnostics only; never calls the upstream or the secret store."""
        return HealthStatus(
            upstream_variant=state.settings.upstream_variant,
            cache=CacheHealth(keys=state.cache.keys(), stats=CacheStats(**state.cache.stats())),
            secret=SecretHealth(**state.secrets.status()),
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: RelayState = Depends(get_state)) -> PlainTextResponse:
        require_metrics_access(request, state.settings.metrics_token)
        CACHE_KEYS_GAUGE.set(float(state.cache.keys()))
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
