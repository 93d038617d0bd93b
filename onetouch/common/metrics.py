"""Prometheus metric definitions for the OneTouch service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


provider_requests_total = Counter(
    "onetouch_provider_requests_total",
    "Provider requests by endpoint and outcome",
    ["endpoint", "outcome"],
)
provider_request_duration_seconds = Histogram(
    "onetouch_provider_request_duration_seconds",
    "Provider request duration seconds",
    ["endpoint"],
)
payment_transitions_total = Counter(
    "onetouch_payment_transitions_total",
    "Payment state transitions",
    ["flow", "to_state"],
)
callback_rejections_total = Counter(
    "onetouch_callback_rejections_total",
    "Inbound callbacks rejected before any state action",
    ["reason"],
)
duplicate_callbacks_total = Counter(
    "onetouch_duplicate_callbacks_total",
    "Callbacks that did not advance payment state",
    ["flow"],
)
token_invalidations_total = Counter(
    "onetouch_token_invalidations_total",
    "Token invalidation attempts",
    ["result"],
)
refunds_total = Counter("onetouch_refunds_total", "Refund attempts", ["outcome"])
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
