"""Upstream credential retrieval with a time-to-live cache."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog
from opentelemetry import trace

from ..common.errors import SecretUnavailable
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.observability import relay_attributes, relay_span
from ..common.settings import TelemetryProxySettings


LOGGER = structlog.get_logger("uplink_relay.secrets")
TRACER = trace.get_tracer("uplink_relay.secrets")

SECRET_REFRESH_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_secret_refreshes_total", "Secret store fetches that returned a credential")
)
SECRET_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_secret_failures_total", "Secret lookups that ended in SecretUnavailable")
)

_WRAPPED_SECRET_FIELDS = ("api_key", "token", "value")


class SecretStore(Protocol):
    async def fetch_secret(self, name: str) -> str: ...


@dataclass(frozen=True)
class Credential:
    value: str = field(repr=False)
    fetched_at: float


def _unwrap_secret(raw: str) -> str:
    """Accept plain secrets and JSON objects holding a single credential field."""
    text = raw.strip()
    if not text.startswith("{"):
        return text
    try:
        document = json.loads(text)
    except ValueError:
        return text
    if not isinstance(document, dict):
        return text
    for name in _WRAPPED_SECRET_FIELDS:
        candidate = document.get(name)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    values = [v for v in document.values() if isinstance(v, str)]
    if len(document) == 1 and len(values) == 1:
        return values[0].strip()
    raise SecretUnavailable("secret payload is a JSON object without a recognisable credential field")


class SecretsManagerStore:
    """AWS Secrets Manager backed :class:`SecretStore`."""

    def __init__(self, region: str, endpoint_url: Optional[str] = None, client=None) -> None:
        if client is None:
            session = boto3.session.Session()
            client_args: dict[str, Optional[str]] = {"region_name": region, "endpoint_url": endpoint_url}
            client = session.client("secretsmanager", **{k: v for k, v in client_args.items() if v})
        self._client = client
        self._region = region

    async def fetch_secret(self, name: str) -> str:
        try:
            response = await asyncio.to_thread(self._client.get_secret_value, SecretId=name)
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "") or "unknown"
            raise SecretUnavailable(f"secret store rejected lookup of {name!r}: {error_code}") from exc
        except BotoCoreError as exc:
            raise SecretUnavailable(f"secret store unreachable in {self._region}: {exc}") from exc

        raw = response.get("SecretString")
        if raw is None and response.get("SecretBinary") is not None:
            binary = response["SecretBinary"]
            raw = binary.decode("utf-8") if isinstance(binary, (bytes, bytearray)) else str(binary)
        if not raw:
            raise SecretUnavailable(f"secret {name!r} has no value")
        return _unwrap_secret(raw)


def build_secret_store(settings: TelemetryProxySettings) -> Optional[SecretStore]:
    if not settings.secret_store_configured:
        return None
    return SecretsManagerStore(settings.secret_store_region, settings.secret_store_endpoint)


class SecretCache:
    """Holds one upstream credential and refreshes it after ``ttl_seconds``.

    Callers that find the credential stale while a refresh is already running
    await that refresh instead of starting another one. Each waiter awaits
    through :func:`asyncio.shield`, so cancelling one request never cancels
    the fetch other requests depend on. A failed refresh leaves the previous
    credential in place; the next call tries again.
    """

    def __init__(
        self,
        store: Optional[SecretStore],
        secret_name: str,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._secret_name = secret_name
        self._ttl = ttl_seconds
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._inflight: Optional[asyncio.Task[Credential]] = None
        self._refreshes = 0
        self._failures = 0

    @property
    def configured(self) -> bool:
        return self._store is not None

    def _is_fresh(self, credential: Optional[Credential]) -> bool:
        return credential is not None and self._clock() - credential.fetched_at < self._ttl

    async def get_secret(self) -> Credential:
        if self._store is None:
            self._failures += 1
            SECRET_FAILURE_COUNTER.inc()
            raise SecretUnavailable("secret store is not configured")

        credential = self._credential
        if self._is_fresh(credential):
            return credential

        task = self._inflight
        if task is None:
            task = asyncio.create_task(self._refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        else:
            LOGGER.debug("Joining in-flight secret refresh", secret_name=self._secret_name)
        return await asyncio.shield(task)

    def invalidate(self) -> None:
        if self._credential is not None:
            LOGGER.info("Secret invalidated", secret_name=self._secret_name)
        self._credential = None

    def status(self) -> dict[str, object]:
        credential = self._credential
        return {
            "configured": self.configured,
            "cached": self._is_fresh(credential),
            "age_seconds": round(self._clock() - credential.fetched_at, 3) if credential else None,
            "refreshes": self._refreshes,
            "failures": self._failures,
        }

    async def _refresh(self) -> Credential:
        with relay_span(TRACER, "secret_cache.refresh", secret_name=self._secret_name) as span:
            try:
                value = await self._store.fetch_secret(self._secret_name)
            except SecretUnavailable as exc:
                self._record_failure(exc)
                span.set_attributes(relay_attributes(secret_error=str(exc)))
                raise
            except Exception as exc:  # noqa: BLE001
                self._record_failure(exc)
                span.set_attributes(relay_attributes(secret_error=str(exc)))
                raise SecretUnavailable(f"secret lookup failed: {exc}") from exc

            if not value:
                error = SecretUnavailable(f"secret {self._secret_name!r} is empty")
                self._record_failure(error)
                raise error

            credential = Credential(value=value, fetched_at=self._clock())
            self._credential = credential
            self._refreshes += 1
            SECRET_REFRESH_COUNTER.inc()
            LOGGER.info("Secret refreshed", secret_name=self._secret_name, ttl_seconds=self._ttl)
            return credential

    def _record_failure(self, exc: BaseException) -> None:
        self._failures += 1
        SECRET_FAILURE_COUNTER.inc()
        LOGGER.error(
            "Secret refresh failed",
            secret_name=self._secret_name,
            error=str(exc),
            stale_value_kept=self._credential is not None,
        )

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # mark the exception retrieved when every waiter went away
            task.exception()
