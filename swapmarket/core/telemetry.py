from __future__ import annotations

from typing import Any, Protocol

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from swapmarket.core.config import settings


def setup_telemetry(app, engine) -> None:
    resource = Resource.create({"service.name": settings.service_name, "deployment.environment": settings.env})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{settings.otlp_endpoint}/v1/traces"))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class MetricsSink(Protocol):
    """
    Counter sink handed to the services that report outcomes.
    Passed in explicitly so tests can swap in a recorder.
    """

    def increment(self, name: str, value: int = 1, **attributes: Any) -> None:
        ...


class NullMetricsSink:
    def increment(self, name: str, value: int = 1, **attributes: Any) -> None:
        return None


class OtelMetricsSink:
    def __init__(self, meter_name: str = "swapmarket"):
        self._meter = metrics.get_meter(meter_name)
        self._counters: dict[str, Any] = {}

    def increment(self, name: str, value: int = 1, **attributes: Any) -> None:
        counter = self._counters.get(name)
        if counter is None:
            counter = self._meter.create_counter(name)
            self._counters[name] = counter
        counter.add(value, attributes={k: str(v) for k, v in attributes.items()})
