"""Monitoring and observability setup.

Tracing and metrics are exported over OTLP/gRPC, profiles go to Pyroscope.
With ``TELEMETRY_ENABLED=false`` no SDK providers are installed, so the
OpenTelemetry API falls back to its no-op tracer and meter and every
instrument below silently discards measurements.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
import pyroscope

from config import (
    API_VERSION,
    ENVIRONMENT,
    OTEL_EXPORTER_OTLP_ENDPOINT,
    PYROSCOPE_SERVER,
    SERVICE_NAME,
    TELEMETRY_ENABLED,
)

logger = logging.getLogger(__name__)


def service_resource() -> Resource:
    """Resource attributes shared by traces, metrics and logs."""
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": API_VERSION,
        "deployment.environment": ENVIRONMENT
    })


def init_tracing() -> trace.Tracer:
    """
    Install the OTLP tracer provider when telemetry is enabled.

    Returns:
        Tracer instance (no-op when telemetry is disabled)
    """
    if TELEMETRY_ENABLED:
        tracer_provider = TracerProvider(resource=service_resource())
        tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True))
        )
        trace.set_tracer_provider(tracer_provider)

        logger.info("Tracing initialized", extra={"otlp_endpoint": OTEL_EXPORTER_OTLP_ENDPOINT})

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Install the OTLP meter provider when telemetry is enabled.

    Returns:
        Meter instance (no-op when telemetry is disabled)
    """
    if TELEMETRY_ENABLED:
        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True),
            export_interval_millis=5000
        )
        metrics.set_meter_provider(MeterProvider(resource=service_resource(), metric_readers=[reader]))

        logger.info("Metrics initialized", extra={"otlp_endpoint": OTEL_EXPORTER_OTLP_ENDPOINT})

    return metrics.get_meter(__name__)


def init_profiling() -> None:
    """Start continuous profiling with Pyroscope."""
    if not TELEMETRY_ENABLED:
        return
    try:
        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": ENVIRONMENT}
        )
        logger.info("Profiling initialized", extra={"pyroscope_server": PYROSCOPE_SERVER})
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


# Initialize tracer and meter
tracer = init_tracing()
meter = init_metrics()

# Catalog metrics
product_views_counter = meter.create_counter(
    "store.product.views",
    description="Total number of product catalog and detail views",
    unit="1"
)

# Cart metrics
cart_additions_counter = meter.create_counter(
    "store.cart.additions",
    description="Total number of units added to carts",
    unit="1"
)

cart_merges_counter = meter.create_counter(
    "store.cart.merges",
    description="Total number of guest carts merged into user carts",
    unit="1"
)

# Order lifecycle metrics
orders_placed_counter = meter.create_counter(
    "store.orders.placed",
    description="Total number of order placement attempts by outcome",
    unit="1"
)

order_amount_histogram = meter.create_histogram(
    "store.orders.amount",
    description="Order total amount",
    unit="USD"
)

orders_cancelled_counter = meter.create_counter(
    "store.orders.cancelled",
    description="Total number of cancelled orders by actor role",
    unit="1"
)

order_status_changes_counter = meter.create_counter(
    "store.orders.status_changes",
    description="Admin order status transitions",
    unit="1"
)

# Inventory metrics
inventory_reservation_failures_counter = meter.create_counter(
    "store.inventory.reservation_failures",
    description="Total number of rejected stock reservations",
    unit="1"
)

# Payment metrics
payments_counter = meter.create_counter(
    "store.payments",
    description="Payment records by kind and final status",
    unit="1"
)

payment_duration_histogram = meter.create_histogram(
    "store.payment.duration",
    description="Payment processing duration",
    unit="s"
)

refund_amount_histogram = meter.create_histogram(
    "store.payment.refund_amount",
    description="Refunded amount",
    unit="USD"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "store.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "store.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)

# External service call metrics
external_notification_duration_histogram = meter.create_histogram(
    "store.external.notification.duration",
    description="Duration of notification service calls",
    unit="s"
)
