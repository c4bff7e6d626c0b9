"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


sms_ingested_total = Counter(
    "sms_ingested_total",
    "Inbound SMS deliveries by ingestion outcome",
    ["service", "outcome"],
)
sms_parse_total = Counter(
    "sms_parse_total",
    "Parser outcomes by extraction path",
    ["service", "outcome", "parser"],
)
sms_parse_confidence = Histogram(
    "sms_parse_confidence",
    "Confidence score assigned by the parser",
    ["service"],
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)
match_decisions_total = Counter(
    "match_decisions_total",
    "Matcher decisions by type",
    ["service", "decision"],
)
settlements_total = Counter(
    "settlements_total",
    "Payment settlement transitions",
    ["service", "kind", "outcome"],
)
manual_review_actions_total = Counter(
    "manual_review_actions_total",
    "Operator actions on the manual review queue",
    ["service", "action"],
)
sms_pipeline_seconds = Histogram(
    "sms_pipeline_seconds",
    "Time from SMS receipt to reconciliation decision",
    ["service", "decision"],
)
circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0 closed, 1 half-open, 2 open)",
    ["name"],
)
circuit_breaker_calls_total = Counter(
    "circuit_breaker_calls_total",
    "Calls guarded by a circuit breaker by outcome",
    ["name", "outcome"],
)
notifications_total = Counter(
    "notifications_total",
    "Outbound supporter notifications by outcome",
    ["service", "outcome"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
