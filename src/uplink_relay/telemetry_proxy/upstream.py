"""HTTP client for The Things Network stored-uplink APIs."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote

import httpx
import structlog
from opentelemetry import trace

from ..common.errors import NetworkError, UpstreamError
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import relay_span
from ..common.settings import AuthScheme, TelemetryProxySettings, UpstreamVariant


LOGGER = structlog.get_logger("uplink_relay.upstream")
TRACER = trace.get_tracer("uplink_relay.upstream")

UPSTREAM_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_upstream_requests_total", "Requests sent to the telemetry API")
)
UPSTREAM_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_upstream_errors_total", "Upstream calls that failed or returned non-200")
)
UPSTREAM_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "uplink_relay_upstream_latency_seconds",
        buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        description="Latency of telemetry API calls",
    )
)

LEGACY_DATA_DOMAIN = "data.thethingsnetwork.org"
STORAGE_PATH = "/api/v3/as/applications/{app_id}/packages/storage/uplink_message"
QUERY_PATH = "/api/v2/query"

ACCEPT_HEADERS: dict[str, str] = {
    "storage": "text/event-stream",
    "query": "application/json",
}
AUTH_PREFIXES: dict[str, str] = {
    "bearer": "Bearer",
    "key": "key",
}


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    body: str
    content_type: Optional[str] = None

    @property
    def is_event_stream(self) -> bool:
        return bool(self.content_type) and "text/event-stream" in self.content_type


@dataclass(frozen=True)
class TelemetryQuery:
    """Client-controlled parameters of one telemetry read."""

    last: Optional[str] = None
    field_mask: Optional[str] = None
    device_id: Optional[str] = None

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "TelemetryQuery":
        return cls(
            last=params.get("last") or None,
            field_mask=params.get("field_mask") or None,
            device_id=params.get("device_id") or None,
        )


class UpstreamClient:
    """Issues the single GET the proxy forwards.

    Transport failures raise :class:`NetworkError` and non-200 answers raise
    :class:`UpstreamError` carrying the upstream status and body untouched.
    Nothing is retried.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        variant: UpstreamVariant,
        auth_scheme: AuthScheme,
        cluster: str,
        domain: str,
        app_id: str,
        timeout_seconds: float = 30.0,
        default_last: str = "1h",
        default_field_mask: str = "up.uplink_message",
    ) -> None:
        self._http = http_client
        self._variant = variant
        self._auth_scheme = auth_scheme
        self._cluster = cluster
        self._domain = domain
        self._app_id = app_id
        self._timeout = httpx.Timeout(timeout_seconds)
        self._default_last = default_last
        self._default_field_mask = default_field_mask

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient, settings: TelemetryProxySettings) -> "UpstreamClient":
        return cls(
            http_client,
            variant=settings.upstream_variant,
            auth_scheme=settings.auth_scheme,
            cluster=settings.upstream_cluster,
            domain=settings.upstream_domain,
            app_id=settings.upstream_app_id,
            timeout_seconds=settings.upstream_timeout_seconds,
            default_last=settings.default_last,
            default_field_mask=settings.default_field_mask,
        )

    @property
    def variant(self) -> UpstreamVariant:
        return self._variant

    @property
    def streaming(self) -> bool:
        return self._variant == "storage"

    def build_url(self, query: TelemetryQuery) -> str:
        if self._variant == "query":
            path = QUERY_PATH
            if query.device_id:
                path = f"{path}/{quote(query.device_id, safe='')}"
            return f"https://{self._app_id}.{LEGACY_DATA_DOMAIN}{path}"
        path = STORAGE_PATH.format(app_id=quote(self._app_id, safe=""))
        return f"https://{self._cluster}.{self._domain}{path}"

    def build_params(self, query: TelemetryQuery) -> dict[str, str]:
        params = {"last": query.last or self._default_last}
        if self._variant == "storage":
            params["field_mask"] = query.field_mask or self._default_field_mask
        return params

    def build_headers(self, credential: str) -> dict[str, str]:
        return {
            "Accept": ACCEPT_HEADERS[self._variant],
            "Authorization": f"{AUTH_PREFIXES[self._auth_scheme]} {credential}",
        }

    async def fetch_telemetry(self, credential: str, query: TelemetryQuery) -> UpstreamResponse:
        url = self.build_url(query)
        params = self.build_params(query)
        UPSTREAM_REQUEST_COUNTER.inc()
        with relay_span(
            TRACER,
            "upstream.fetch_telemetry",
            variant=self._variant,
            last=params["last"],
            field_mask=params.get("field_mask"),
            device_id=query.device_id,
        ) as span:
            start = time.perf_counter()
            try:
                response = await self._http.get(
                    url,
                    params=params,
                    headers=self.build_headers(credential),
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as exc:
                UPSTREAM_ERROR_COUNTER.inc(labels={"kind": "timeout"})
                LOGGER.error("Upstream request timed out", url=url, timeout=self._timeout.read)
                raise NetworkError(f"upstream request timed out: {exc}") from exc
            except httpx.TransportError as exc:
                UPSTREAM_ERROR_COUNTER.inc(labels={"kind": "transport"})
                LOGGER.error("Upstream request failed", url=url, error=str(exc))
                raise NetworkError(f"upstream request failed: {exc}") from exc
            finally:
                UPSTREAM_LATENCY_HISTOGRAM.observe(time.perf_counter() - start)

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code != 200:
                UPSTREAM_ERROR_COUNTER.inc(labels={"kind": "status", "status": response.status_code})
                LOGGER.warning(
                    "Upstream returned non-200",
                    url=url,
                    status=response.status_code,
                    body=response.text[:2000],
                )
                raise UpstreamError(response.status_code, response.text, response.headers.get("content-type"))
            LOGGER.debug("Upstream responded", url=url, bytes=len(response.content))
            return UpstreamResponse(
                status_code=response.status_code,
                body=response.text,
                content_type=response.headers.get("content-type"),
            )
