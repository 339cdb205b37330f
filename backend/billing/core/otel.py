"""OpenTelemetry export and instrumentation for the billing service"""
import logging
from contextlib import contextmanager

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from billing.core.config import settings

logger = logging.getLogger(__name__)

# Resolves to a no-op tracer until a provider is installed
_tracer = trace.get_tracer("billing.webhooks")

# Paths left untraced
EXCLUDED_URLS = "health,metrics"


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": settings.OTEL_ENVIRONMENT
    })


def _exporter_kwargs() -> dict:
    return {"endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT, "insecure": True}


def _install_providers(resource: Resource):
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_kwargs())))
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(**_exporter_kwargs()),
        export_interval_millis=15000,
        export_timeout_millis=30000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))


def _install_log_export(resource: Resource):
    logger_provider = LoggerProvider(resource=resource)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**_exporter_kwargs())))
    set_logger_provider(logger_provider)
    logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))


def configure_telemetry(app, engine) -> bool:
    """Export traces, metrics and logs over OTLP and instrument the app

    Instruments FastAPI, the httpx client used for Supabase Auth and the
    SQLAlchemy engine. Does nothing and returns False when no OTLP endpoint
    is configured.
    """
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        resource = _resource()
        _install_providers(resource)
        _install_log_export(resource)

        FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)
        HTTPXClientInstrumentor().instrument()
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False
    return True


@contextmanager
def webhook_span(event_type: str, event_id: str):
    """Span around one webhook handler run

    Handler exceptions are recorded on the span and re-raised.
    """
    with _tracer.start_as_current_span(
        f"stripe.webhook {event_type}",
        attributes={"stripe.event_type": event_type, "stripe.event_id": event_id},
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            raise
