"""Global OpenTelemetry TracerProvider and MeterProvider setup.

setup_tracer() and setup_meter() each install one SDK provider for the
process with the exporters the settings ask for. Later calls return the
provider that is already installed.
"""

from __future__ import annotations

import atexit
import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from cadence.config import Settings

logger = logging.getLogger(__name__)

_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None


def build_resource(settings: Settings) -> Resource:
    return Resource.create({
        "service.name": settings.otel_service_name,
        "service.namespace": settings.otel_service_namespace,
        "deployment.environment": settings.otel_deployment_environment,
        "telemetry.sdk.name": "opentelemetry",
        "telemetry.sdk.language": "python",
    })


def setup_tracer(
    settings: Settings | None = None,
    *,
    provider: TracerProvider | None = None,
    otlp: bool | None = None,
    console: bool | None = None,
) -> TracerProvider:
    """Install the global TracerProvider once and attach exporters.

    otlp/console default to the settings: OTLP when an endpoint is
    configured, console when otel_console_exporter is on.
    """
    global _provider
    if _provider is not None:
        logger.warning("Tracer provider already initialized, returning existing provider")
        return _provider

    settings = settings or Settings()
    if otlp is None:
        otlp = bool(settings.otel_exporter_otlp_endpoint)
    if console is None:
        console = settings.otel_console_exporter

    _provider = provider or TracerProvider(resource=build_resource(settings))

    if otlp:
        try:
            _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
            logger.info("OTLP span exporter configured (%s)", settings.otel_exporter_otlp_endpoint)
        except Exception:
            logger.warning("Failed to configure OTLP exporter", exc_info=True)
    if console:
        try:
            _provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        except Exception:
            logger.warning("Failed to configure console exporter", exc_info=True)

    trace.set_tracer_provider(_provider)
    atexit.register(_flush_on_exit)
    return _provider


def _flush_on_exit() -> None:
    if _provider is None:
        return
    try:
        _provider.force_flush()
    except Exception:
        logger.warning("Failed to flush tracer provider on exit")


def reset_tracer_provider() -> None:
    """Forget the installed provider. Test helper; OpenTelemetry's global stays set."""
    global _provider
    _provider = None


def setup_meter(
    settings: Settings | None = None,
    *,
    readers: list[MetricReader] | None = None,
    otlp: bool | None = None,
    console: bool | None = None,
) -> MeterProvider:
    """Install the global MeterProvider once.

    Extra readers (an InMemoryMetricReader in tests, say) are attached
    alongside the exporters chosen the same way as setup_tracer().
    """
    global _meter_provider
    if _meter_provider is not None:
        logger.warning("Meter provider already initialized, returning existing provider")
        return _meter_provider

    settings = settings or Settings()
    if otlp is None:
        otlp = bool(settings.otel_exporter_otlp_endpoint)
    if console is None:
        console = settings.otel_console_exporter

    metric_readers = list(readers or [])
    if otlp:
        try:
            metric_readers.append(PeriodicExportingMetricReader(OTLPMetricExporter()))
            logger.info("OTLP metric exporter configured (%s)", settings.otel_exporter_otlp_endpoint)
        except Exception:
            logger.warning("Failed to configure OTLP metric exporter", exc_info=True)
    if console:
        try:
            metric_readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))
        except Exception:
            logger.warning("Failed to configure console metric exporter", exc_info=True)

    _meter_provider = MeterProvider(resource=build_resource(settings), metric_readers=metric_readers)
    metrics.set_meter_provider(_meter_provider)
    atexit.register(_shutdown_meter_on_exit)
    return _meter_provider


def _shutdown_meter_on_exit() -> None:
    if _meter_provider is None:
        return
    try:
        _meter_provider.shutdown()
    except Exception:
        logger.warning("Failed to shut down meter provider on exit")


def reset_meter_provider() -> None:
    """Forget the installed meter provider. Test helper; OpenTelemetry's global stays set."""
    global _meter_provider
    _meter_provider = None
