from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import os
from urllib.parse import urlsplit

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.util.types import AttributeValue

from planbridge.core.config import Settings

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
ATTRIBUTE_PREFIX = "planbridge"


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_logging() -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = setup_telemetry(settings, service_suffix="api")
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider)
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        FastAPIInstrumentor.uninstrument_app(app)
    shutdown_telemetry(runtime)


def setup_telemetry(settings: Settings, *, service_suffix: str) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(pipeline_resource_attributes(settings, service_suffix=service_suffix)),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    if not _HTTPX_INSTRUMENTOR.is_instrumented_by_opentelemetry:
        _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def pipeline_resource_attributes(settings: Settings, *, service_suffix: str) -> dict[str, AttributeValue]:
    """Resource attributes shared by the API and worker processes."""
    return {
        SERVICE_NAME: f"{settings.otel_service_name}-{service_suffix}",
        SERVICE_NAMESPACE: ATTRIBUTE_PREFIX,
        DEPLOYMENT_ENVIRONMENT: settings.environment,
        f"{ATTRIBUTE_PREFIX}.storage_backend": settings.storage_backend,
        f"{ATTRIBUTE_PREFIX}.production.host": urlsplit(settings.production_api_base_url).netloc,
        f"{ATTRIBUTE_PREFIX}.dispatch.batch_size": settings.batch_size,
        f"{ATTRIBUTE_PREFIX}.retry.max_count": settings.max_retry_count,
    }


def set_span_attributes(span: trace.Span, attributes: Mapping[str, AttributeValue | None]) -> None:
    """Set ``planbridge.<key>`` attributes on ``span``, skipping ``None`` values."""
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(f"{ATTRIBUTE_PREFIX}.{key}", value)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if _HTTPX_INSTRUMENTOR.is_instrumented_by_opentelemetry:
        _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if endpoint is None:
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logging.getLogger(__name__).info(
            "OTel exporter endpoint not set; spans remain local-only for service=%s",
            settings.otel_service_name,
        )
        return None

    headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    if headers:
        return OTLPSpanExporter(endpoint=endpoint, headers=headers)
    return OTLPSpanExporter(endpoint=endpoint)


def _parse_headers(raw: str | None) -> dict[str, str]:
    if raw is None:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if not separator:
            continue
        stripped_key = key.strip()
        if stripped_key:
            parsed[stripped_key] = value.strip()
    return parsed


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        span = trace.get_current_span()
        context = span.get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
