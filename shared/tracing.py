"""
OpenTelemetry setup, plus W3C trace context carried in Kafka record headers
so a consumer span joins the trace of the request that produced the event.
"""

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract, inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased


def setup_tracing(service_name: str, otlp_endpoint: str, sample_ratio: float = 1.0) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=ParentBased(TraceIdRatioBased(sample_ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return provider


def kafka_headers() -> list[tuple[str, bytes]]:
    """Current trace context as aiokafka record headers."""
    carrier: dict[str, str] = {}
    inject(carrier)
    return [(k, v.encode()) for k, v in carrier.items()]


def context_from_headers(headers) -> Context:
    carrier = {k: v.decode() for k, v in headers or () if isinstance(v, bytes)}
    return extract(carrier)
