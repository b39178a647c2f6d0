"""OpenTelemetry tracing bootstrap.

Opt-in: nothing is exported unless ``OTLP_ENDPOINT`` is configured.  Without
a provider, :func:`get_tracer` returns the global no-op tracer, so the
batch processor can open spans unconditionally.

Spans emitted by the worker:
    ``subscription.batch``    one per run_batch() transaction
    ``subscription.process``  one per record (attributes: subscription id,
                              type, trace id, outcome)
"""

from __future__ import annotations

import logging
import re

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("subworker.tracing")

_tracer_provider: TracerProvider | None = None


def _resolve_endpoint(base: str | None) -> str | None:
    """``http://collector:4318`` or ``…/v1/traces`` → ``…/v1/traces``; None when unset."""
    if not base:
        return None
    clean = re.sub(r"/v1/[^/]+$", "", base.rstrip("/"))
    return f"{clean}/v1/traces"


def setup_tracing(
    app=None,
    otlp_endpoint: str | None = None,
    service_name: str = "subscription-worker",
    service_version: str = "0.1.0",
) -> TracerProvider | None:
    """Install an OTLP/HTTP span exporter and instrument *app* (if given)."""
    global _tracer_provider

    endpoint = _resolve_endpoint(otlp_endpoint)
    if not endpoint:
        logger.info("OpenTelemetry disabled: no OTLP endpoint configured")
        return None

    resource = Resource.create({"service.name": service_name, "service.version": service_version})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider = provider

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app)
    logger.info("OTEL traces -> %s", endpoint)
    return provider


def shutdown_tracing() -> None:
    """Flush pending spans; no-op when tracing was never enabled."""
    global _tracer_provider
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        _tracer_provider = None


def get_tracer(name: str):
    return trace.get_tracer(name)
