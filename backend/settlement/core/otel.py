"""OpenTelemetry export for traces, metrics and logs

Nothing is exported unless OTEL_EXPORTER_OTLP_ENDPOINT is set. The three
signals share one Resource so the collector can correlate a webhook span
with its log records.
"""
import logging
from typing import Any, Dict, List

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from settlement.core.config import settings

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"
METRIC_EXPORT_INTERVAL_MS = 5000

# Health checks and scrapes would otherwise produce a span every few seconds
UNTRACED_URLS = "health,metrics"

# SDK providers installed by this process, flushed on shutdown
_providers: List[Any] = []


def otel_enabled() -> bool:
    return bool(settings.OTEL_EXPORTER_OTLP_ENDPOINT)


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": settings.OTEL_ENVIRONMENT,
        "stripe.livemode": settings.STRIPE_LIVE_MODE,
    })


def _exporter_options() -> Dict[str, Any]:
    return {"endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT, "insecure": True}


def initialize_otel() -> bool:
    """Install the trace and metric providers.

    Returns:
        False when export is not configured or the exporters could not be built
    """
    if not otel_enabled():
        return False

    try:
        resource = _resource()

        trace_provider = TracerProvider(resource=resource)
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_options())))
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(**_exporter_options()),
            export_interval_millis=METRIC_EXPORT_INTERVAL_MS,
        )
        meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
        metrics.set_meter_provider(meter_provider)
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False

    _providers.extend([trace_provider, meter_provider])
    return True


def setup_otel_logging() -> bool:
    """Ship root logger records to the collector next to the traces"""
    if not otel_enabled():
        return False

    try:
        logger_provider = LoggerProvider(resource=_resource())
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**_exporter_options())))
        set_logger_provider(logger_provider)
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False

    logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
    _providers.append(logger_provider)
    return True


def shutdown_otel():
    """Flush and stop whatever initialize_otel/setup_otel_logging installed"""
    while _providers:
        provider = _providers.pop()
        try:
            provider.shutdown()
        except Exception as e:
            logger.warning(f"OpenTelemetry shutdown error: {e}")


def instrument_fastapi(app):
    """Trace every request except health checks and metric scrapes"""
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine):
    """Trace statements on the given engine when export is configured"""
    if not otel_enabled():
        return
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")
