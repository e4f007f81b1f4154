"""Request orchestration: cache, credential, upstream call, parse."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

import structlog
from fastapi import status
from opentelemetry import trace

from ..common.errors import NetworkError, SecretUnavailable, UpstreamError
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.observability import relay_attributes, relay_span
from ..common.schemas import ErrorEnvelope
from .response_cache import ResponseCache, cache_key
from .secrets import SecretCache
from .stream import StreamParser, loads_strict
from .upstream import TelemetryQuery, UpstreamClient


LOGGER = structlog.get_logger("uplink_relay.handler")
TRACER = trace.get_tracer("uplink_relay.handler")

PROXY_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_proxy_failures_total", "Proxy requests answered with an error envelope")
)
RECORDS_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_records_served_total", "Telemetry records returned to clients")
)

DATA_PATH = "/api/data"
CREDENTIAL_REJECTED_STATUSES = {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}
BODILESS_STATUSES = {status.HTTP_204_NO_CONTENT, status.HTTP_205_RESET_CONTENT, status.HTTP_304_NOT_MODIFIED}

QueryParams = Union[Mapping[str, str], Iterable[tuple[str, str]]]


@dataclass(frozen=True)
class ProxyResult:
    status_code: int
    records: Optional[list[Any]] = None
    error: Optional[ErrorEnvelope] = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def payload(self) -> Union[list[Any], dict[str, Any]]:
        if self.error is not None:
            return self.error.to_payload()
        return self.records


def _can_carry_body(status_code: int) -> bool:
    return status_code >= 200 and status_code not in BODILESS_STATUSES


def _decode_details(body: str) -> Any:
    text = body.strip()
    if not text:
        return None
    try:
        return loads_strict(text)
    except (ValueError, RecursionError):
        return body


class ProxyHandler:
    """Answers one ``/api/data`` request.

    The response is either the parsed record array or a fully populated
    :class:`ErrorEnvelope`, never both. Only successful arrays are cached.
    """

    def __init__(
        self,
        secrets: SecretCache,
        upstream: UpstreamClient,
        cache: ResponseCache,
        parser: Optional[StreamParser] = None,
        cache_ttl_seconds: Optional[float] = None,
    ) -> None:
        self._secrets = secrets
        self._upstream = upstream
        self._cache = cache
        self._parser = parser or StreamParser()
        self._cache_ttl = cache_ttl_seconds

    async def handle(self, params: QueryParams, path: str = DATA_PATH) -> ProxyResult:
        pairs = list(params.items()) if isinstance(params, Mapping) else list(params)
        key = cache_key(path, pairs)

        cached = self._cache.get(key)
        if cached is not None:
            LOGGER.debug("Serving cached telemetry", cache_key=key, records=len(cached))
            return ProxyResult(status_code=status.HTTP_200_OK, records=cached, cached=True)

        query = TelemetryQuery.from_params(dict(pairs))
        with relay_span(TRACER, "proxy.handle", cache_key=key) as span:
            try:
                credential = await self._secrets.get_secret()
            except SecretUnavailable as exc:
                return self._fail(status.HTTP_502_BAD_GATEWAY, "secret unavailable", str(exc), key=key)

            try:
                response = await self._upstream.fetch_telemetry(credential.value, query)
            except NetworkError as exc:
                return self._fail(status.HTTP_502_BAD_GATEWAY, "upstream unreachable", str(exc), key=key)
            except UpstreamError as exc:
                return self._upstream_failure(exc, key=key)

            if self._upstream.streaming or response.is_event_stream:
                records = self._parser.parse(response.body)
            else:
                records = self._parser.parse_document(response.body)

            self._cache.set(key, records, self._cache_ttl)
            RECORDS_SERVED_COUNTER.inc(len(records))
            span.set_attributes(relay_attributes(records=len(records)))
            LOGGER.info("Telemetry fetched", cache_key=key, records=len(records))
            return ProxyResult(status_code=status.HTTP_200_OK, records=records)

    def _upstream_failure(self, error: UpstreamError, *, key: str) -> ProxyResult:
        if error.status_code in CREDENTIAL_REJECTED_STATUSES:
            self._secrets.invalidate()
        details = _decode_details(error.body)
        if not _can_carry_body(error.status_code):
            # an envelope cannot ride on 1xx, 204, 205 or 304
            return self._fail(
                status.HTTP_502_BAD_GATEWAY,
                "upstream error",
                {"upstream_status": error.status_code, "body": details},
                key=key,
            )
        return self._fail(error.status_code, "upstream error", details, key=key, relayed=True)

    def _fail(self, status_code: int, message: str, details: Any, *, key: str, relayed: bool = False) -> ProxyResult:
        PROXY_FAILURE_COUNTER.inc(labels={"status": status_code})
        LOGGER.warning("Proxy request failed", cache_key=key, status=status_code, error=message)
        envelope = ErrorEnvelope(error=message, status=status_code, details=details, relayed=relayed)
        return ProxyResult(status_code=status_code, error=envelope)
