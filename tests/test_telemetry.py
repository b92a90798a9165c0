from __future__ import annotations

from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_NAMESPACE
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from conftest import make_settings
from planbridge.core.telemetry import pipeline_resource_attributes, set_span_attributes


def test_resource_attributes_describe_the_deployment() -> None:
    settings = make_settings(environment="staging", batch_size=25, max_retry_count=4)

    attributes = pipeline_resource_attributes(settings, service_suffix="worker")

    assert attributes[SERVICE_NAME] == "planbridge-worker"
    assert attributes[SERVICE_NAMESPACE] == "planbridge"
    assert attributes["planbridge.storage_backend"] == "memory"
    assert attributes["planbridge.production.host"] == "production.test"
    assert attributes["planbridge.dispatch.batch_size"] == 25
    assert attributes["planbridge.retry.max_count"] == 4


def test_span_attributes_are_prefixed_and_skip_missing_values() -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    tracer = provider.get_tracer("planbridge-tests")

    with tracer.start_as_current_span("sync.submission") as span:
        set_span_attributes(span, {"submission.id": "sub-1", "production.plan_id": None, "submission.retry_count": 2})

    [finished] = exporter.get_finished_spans()
    assert dict(finished.attributes) == {
        "planbridge.submission.id": "sub-1",
        "planbridge.submission.retry_count": 2,
    }
