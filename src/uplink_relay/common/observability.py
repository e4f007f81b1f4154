"""Logging and tracing setup for the telemetry proxy."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars

from .settings import TelemetryProxySettings


ATTRIBUTE_PREFIX = "uplink_relay."
REDACTED = "[redacted]"
# log keys that may hold the upstream credential
SENSITIVE_LOG_KEYS = frozenset({"authorization", "credential", "secret_value", "api_key", "token"})
# per-request chatter from the HTTP and AWS client libraries
NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "uvicorn.access")
# polled by the dashboard and scrapers; not worth a span each
UNTRACED_PATHS = "health,metrics"

_logging_configured = False
_tracer_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def redact_credentials(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking any field that could carry the upstream key."""
    for key in event_dict.keys() & SENSITIVE_LOG_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_credentials,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Split ``key=value,key2=value2`` exporter headers into a dict."""
    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def relay_attributes(**attributes: Any) -> dict[str, Any]:
    """Prefix span attribute names and drop unset values."""
    return {f"{ATTRIBUTE_PREFIX}{name}": value for name, value in attributes.items() if value is not None}


@contextmanager
def relay_span(tracer: trace.Tracer, name: str, **attributes: Any) -> Iterator[trace.Span]:
    with tracer.start_as_current_span(name, attributes=relay_attributes(**attributes)) as span:
        yield span


def build_resource(service_name: str, settings: TelemetryProxySettings) -> Resource:
    return Resource.create(
        {
            "service.name": service_name,
            f"{ATTRIBUTE_PREFIX}upstream_variant": settings.upstream_variant,
            f"{ATTRIBUTE_PREFIX}app_id": settings.upstream_app_id,
            f"{ATTRIBUTE_PREFIX}cluster": settings.upstream_cluster,
        }
    )


def configure_tracing(service_name: str, settings: TelemetryProxySettings) -> None:
    """Install the tracer provider once per process and instrument httpx.

    Spans go to the OTLP/HTTP collector named in the settings, or to an
    in-memory exporter when none is configured.
    """

    global _tracer_configured
    if not _tracer_configured and not isinstance(trace.get_tracer_provider(), TracerProvider):
        ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
        provider = TracerProvider(
            resource=build_resource(service_name, settings),
            sampler=ParentBased(TraceIdRatioBased(ratio)),
        )
        if settings.otel_exporter_endpoint:
            exporter = OTLPSpanExporter(
                endpoint=settings.otel_exporter_endpoint,
                headers=parse_otlp_headers(settings.otel_exporter_headers),
            )
            provider.add_span_processor(BatchSpanProcessor(exporter))
        else:
            provider.add_span_processor(SimpleSpanProcessor(InMemorySpanExporter()))
        trace.set_tracer_provider(provider)
    _tracer_configured = True

    instrumentor = HTTPXClientInstrumentor()
    if not instrumentor.is_instrumented_by_opentelemetry:
        instrumentor.instrument()


def instrument_fastapi_app(app) -> None:
    if getattr(app.state, "otel_instrumented", False):
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_PATHS)
    app.state.otel_instrumented = True
