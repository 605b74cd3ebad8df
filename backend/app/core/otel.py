"""OpenTelemetry setup and the reconciler's tracer

Spans are always created through get_tracer(); without an exporter the API
hands out no-op spans, so call sites never check whether tracing is on.
"""
import logging
from typing import Dict

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.core.config import settings

logger = logging.getLogger(__name__)

TRACER_NAME = "merchant_reconciler"
SERVICE_VERSION = "1.0.0"


def otel_enabled() -> bool:
    return bool(settings.OTEL_EXPORTER_OTLP_ENDPOINT)


def resource_attributes() -> Dict[str, str]:
    """Identify this deployment: which ledger it writes to and which store it watches"""
    attributes = {
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": settings.OTEL_ENVIRONMENT,
        "reconciler.ledger.backend": settings.LEDGER_BACKEND,
        "reconciler.ledger.mode": settings.LEDGER_MODE,
    }
    if settings.BTCPAY_STORE_ID:
        attributes["btcpay.store_id"] = settings.BTCPAY_STORE_ID
    return attributes


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME, SERVICE_VERSION)


def initialize_otel() -> bool:
    """Install trace and metric providers exporting over OTLP/gRPC"""
    if not otel_enabled():
        return False

    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    try:
        resource = Resource.create(resource_attributes())

        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(tracer_provider)

        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=endpoint, insecure=True),
            export_interval_millis=15000
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False
    return True


def setup_otel_logging() -> bool:
    """Ship records from the reconcile, ledger, sweep and webhook loggers over OTLP"""
    if not otel_enabled():
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        provider = LoggerProvider(resource=Resource.create(resource_attributes()))
        provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True))
        )
        set_logger_provider(provider)
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=provider))
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False
    return True


def instrument_app(app, engine) -> None:
    """Trace inbound webhooks, BTCPay/ledger HTTP calls and database queries"""
    if not otel_enabled():
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
    HTTPXClientInstrumentor().instrument()
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")
