"""Telemetry helpers for tracing and metrics.

Instrumented code only talks to the OpenTelemetry API.  Without an SDK
provider the API hands out no-op tracers and meters; :func:`configure_telemetry`
installs SDK providers exporting over OTLP/HTTP, and runs automatically the
first time a tracer or meter is requested while ``OTEL_EXPORTER_OTLP_ENDPOINT``
is set.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Final

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import SpanKind, Status, StatusCode


_logger = logging.getLogger(__name__)

_DEFAULT_SERVICE_NAME: Final[str] = "opencode-orchestrator"
_LOCK = threading.Lock()
_INITIALISED = False


def configure_telemetry(endpoint: str | None = None, *, service_name: str | None = None) -> bool:
    """Install SDK providers exporting to ``endpoint``.

    Returns ``False`` (leaving the API no-op providers in place) when no
    endpoint is given or configured.  Safe to call more than once.
    """

    global _INITIALISED

    endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if _INITIALISED or not endpoint:
        return _INITIALISED

    with _LOCK:
        if _INITIALISED:
            return True

        resource = Resource.create(
            {"service.name": service_name or os.getenv("OTEL_SERVICE_NAME", _DEFAULT_SERVICE_NAME)}
        )
        base = endpoint.rstrip("/")

        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{base}/v1/traces")))
        trace.set_tracer_provider(tracer_provider)

        reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=f"{base}/v1/metrics"))
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))

        _logger.info("OpenTelemetry exporters configured", extra={"endpoint": base})
        _INITIALISED = True
        return True


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return a module-specific tracer, initialising providers on first use."""

    configure_telemetry()
    return trace.get_tracer(name or __name__)


def get_meter(name: str | None = None) -> metrics.Meter:
    """Return a module-specific meter, initialising providers on first use."""

    configure_telemetry()
    return metrics.get_meter(name or __name__)


__all__ = [
    "configure_telemetry",
    "get_tracer",
    "get_meter",
    "Status",
    "StatusCode",
    "SpanKind",
]
