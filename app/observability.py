import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.metrics import set_meter_provider
from opentelemetry._logs import set_logger_provider

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def otel_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "true").lower() not in ("0", "false", "no")


def init_logging():
    """Console logging only, used when OpenTelemetry export is disabled."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    if not root_logger.handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(stream_handler)


def init_opentelemetry(service_version: str = "1.0.0"):
    if not otel_enabled():
        init_logging()
        return

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://lgtm:4318").rstrip("/")

    resource = Resource.create(attributes={
        "service.name": os.getenv("OTEL_SERVICE_NAME", "hata-prediction-api"),
        "service.version": service_version,
        "deployment.environment": os.getenv("ENV", "prod").lower(),
    })

    # Tracing
    trace_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(trace_provider)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")))

    # Metrics (instruments created before this point are proxied to the new provider)
    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics"))
    set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))

    # Logging
    log_provider = LoggerProvider(resource=resource)
    set_logger_provider(log_provider)
    log_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(endpoint=f"{endpoint}/v1/logs")))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(LoggingHandler(level=logging.INFO, logger_provider=log_provider))
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(stream_handler)

    # Adds trace and span ids to log records
    LoggingInstrumentor().instrument(set_logging_format=False, log_level=logging.INFO)

    # Keep the SDK's own export errors visible without flooding the root logger
    otel_sdk_logger = logging.getLogger("opentelemetry")
    otel_sdk_logger.setLevel(logging.WARNING)
    otel_sdk_logger.addHandler(logging.StreamHandler())
    otel_sdk_logger.propagate = False
