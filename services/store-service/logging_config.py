"""Structured logging configuration.

Every record is written to stdout as one JSON object carrying the active
trace context, so log lines can be joined with the spans they were emitted
in. When telemetry is enabled records are also shipped over OTLP.
"""
import logging
import sys
from pythonjsonlogger import jsonlogger
from opentelemetry import trace

from config import ENVIRONMENT, LOG_LEVEL, OTEL_EXPORTER_OTLP_ENDPOINT, SERVICE_NAME, TELEMETRY_ENABLED
from monitoring import service_resource

# Note: OpenTelemetry logging SDK is experimental
try:
    from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
    from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
    OTLP_LOGGING_AVAILABLE = True
except ImportError:
    OTLP_LOGGING_AVAILABLE = False

# Libraries that log every request at INFO
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")


class StoreJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds trace context and service identity."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            log_record['trace_id'] = format(span_context.trace_id, '032x')
            log_record['span_id'] = format(span_context.span_id, '016x')

        log_record['service'] = SERVICE_NAME
        log_record['env'] = ENVIRONMENT

        if 'message' in log_record:
            log_record['msg'] = log_record.pop('message')


def _otlp_handler() -> logging.Handler:
    """Handler that exports records to the collector alongside traces and metrics."""
    from opentelemetry._logs import set_logger_provider

    logger_provider = LoggerProvider(resource=service_resource())
    logger_provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True))
    )
    set_logger_provider(logger_provider)
    return LoggingHandler(level=logging.INFO, logger_provider=logger_provider)


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure structured logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StoreJsonFormatter(
        '%(levelname)s %(name)s %(message)s',
        rename_fields={'levelname': 'level', 'name': 'logger'}
    ))
    root_logger.addHandler(console_handler)

    if TELEMETRY_ENABLED:
        if not OTLP_LOGGING_AVAILABLE:
            logging.warning("OTLP logging SDK not available - logs will only go to stdout")
        else:
            try:
                root_logger.addHandler(_otlp_handler())
                logging.info("OTLP logging handler configured")
            except Exception as e:
                logging.warning(f"Failed to configure OTLP logging handler: {e}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
