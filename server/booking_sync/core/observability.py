"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging
from typing import Optional

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CollectorRegistry
import structlog

from .config import settings

SERVICE_NAME = "booking-sync"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Sync metrics
SYNC_RUNS = Counter(
    'sync_runs_total',
    'Total sync runs by type and final status',
    ['sync_type', 'status'],
    registry=REGISTRY
)

SYNC_DURATION = Histogram(
    'sync_run_duration_seconds',
    'Sync run duration in seconds',
    ['sync_type'],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600),
    registry=REGISTRY
)

BOOKINGS_RECONCILED = Counter(
    'bookings_reconciled_total',
    'Bookings reconciled by outcome',
    ['outcome'],
    registry=REGISTRY
)

BOOKINGS_FAILED = Counter(
    'bookings_failed_total',
    'Bookings that could not be transformed or stored',
    ['error_code'],
    registry=REGISTRY
)

GROUPS_CREATED = Counter(
    'tour_groups_created_total',
    'Tour groups created by automatic grouping',
    registry=REGISTRY
)

GROUPING_SKIPPED = Counter(
    'grouping_passes_skipped_total',
    'Grouping passes skipped or rolled back',
    ['reason'],
    registry=REGISTRY
)

# Upstream metrics
UPSTREAM_REQUESTS = Counter(
    'upstream_requests_total',
    'Requests sent to the upstream provider',
    ['method', 'status_code'],
    registry=REGISTRY
)

UPSTREAM_RETRIES = Counter(
    'upstream_retries_total',
    'Upstream requests retried after HTTP 429',
    registry=REGISTRY
)

# Inbound metrics
INBOUND_RATE_LIMITED = Counter(
    'inbound_requests_rate_limited_total',
    'Inbound requests rejected by the rate limiter',
    ['operation'],
    registry=REGISTRY
)

WEBHOOK_EVENTS = Counter(
    'webhook_events_total',
    'Webhook events received by topic and outcome',
    ['topic', 'outcome'],
    registry=REGISTRY
)

# Backlog gauges, refreshed from the database on every scrape
TOURS_AWAITING_GUIDE = Gauge(
    'tours_awaiting_guide',
    'Upcoming, non-cancelled tours without an assigned guide',
    registry=REGISTRY
)

TOURS_NEEDING_RESYNC = Gauge(
    'tours_needing_resync',
    'Tours flagged by webhooks for a fresh upstream fetch',
    registry=REGISTRY
)

LAST_SYNC_COMPLETED = Gauge(
    'sync_last_completed_timestamp_seconds',
    'Unix time of the most recent completed sync run',
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource(app_name: str) -> Resource:
    return Resource.create({
        "service.name": app_name,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry tracing."""

    # Setup tracer provider
    trace.set_tracer_provider(TracerProvider(resource=_resource(app_name)))

    # Setup OTLP exporter (if OTLP endpoint is configured)
    if settings.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        span_processor = BatchSpanProcessor(otlp_exporter)
        trace.get_tracer_provider().add_span_processor(span_processor)

    return trace.get_tracer(__name__)


def setup_metrics(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry metrics."""

    # Setup OTLP metric exporter (if configured)
    if settings.otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        reader = PeriodicExportingMetricReader(exporter=otlp_exporter, export_interval_millis=60000)
        metrics.set_meter_provider(MeterProvider(resource=_resource(app_name), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy():
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument()


def get_tracer():
    """Return the tracer used around sync runs."""
    return trace.get_tracer("booking_sync")


class MetricsCollector:
    """Collector for synchronization metrics."""

    @staticmethod
    def record_sync_run(sync_type: str, status: str, duration_seconds: float):
        """Record a finished sync run."""
        SYNC_RUNS.labels(sync_type=sync_type, status=status).inc()
        SYNC_DURATION.labels(sync_type=sync_type).observe(duration_seconds)

    @staticmethod
    def record_booking_reconciled(outcome: str):
        """Record a created or updated booking."""
        BOOKINGS_RECONCILED.labels(outcome=outcome).inc()

    @staticmethod
    def record_booking_failed(error_code: str):
        """Record a booking that failed to reconcile."""
        BOOKINGS_FAILED.labels(error_code=error_code).inc()

    @staticmethod
    def record_groups_created(count: int):
        """Record newly created tour groups."""
        if count:
            GROUPS_CREATED.inc(count)

    @staticmethod
    def record_grouping_skipped(reason: str):
        """Record a grouping pass that had no effect."""
        GROUPING_SKIPPED.labels(reason=reason).inc()

    @staticmethod
    def record_upstream_request(method: str, status_code: int):
        """Record a request sent upstream."""
        UPSTREAM_REQUESTS.labels(method=method, status_code=str(status_code)).inc()

    @staticmethod
    def record_upstream_retry():
        """Record a retry after an upstream 429."""
        UPSTREAM_RETRIES.inc()

    @staticmethod
    def record_inbound_rate_limited(operation: str):
        """Record an inbound request rejected by the rate limiter."""
        INBOUND_RATE_LIMITED.labels(operation=operation).inc()

    @staticmethod
    def record_webhook_event(topic: str, outcome: str):
        """Record a processed webhook event."""
        WEBHOOK_EVENTS.labels(topic=topic, outcome=outcome).inc()

    @staticmethod
    def record_backlog(awaiting_guide: int, needing_resync: int, last_completed: Optional[float]):
        """Publish the current backlog sizes."""
        TOURS_AWAITING_GUIDE.set(awaiting_guide)
        TOURS_NEEDING_RESYNC.set(needing_resync)
        if last_completed is not None:
            LAST_SYNC_COMPLETED.set(last_completed)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()
