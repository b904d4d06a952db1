"""Prometheus metric definitions for the settlement service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


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
webhook_events_total = Counter(
    "webhook_events_total",
    "Gateway webhook deliveries by event type and handling outcome",
    ["event", "outcome"],
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries with a missing secret, missing signature, or mismatch",
    ["reason", "enforced"],
)
settlements_total = Counter(
    "settlements_total",
    "Finalize passes by source and outcome",
    ["source", "outcome"],
)
settlement_failures_total = Counter(
    "settlement_failures_total",
    "Failed-payment passes by source and outcome",
    ["source", "outcome"],
)
duplicate_settlements_skipped_total = Counter(
    "duplicate_settlements_skipped_total",
    "Finalize passes stopped by the ledger idempotency gate",
    ["source", "stage"],
)
settlement_latency_seconds = Histogram(
    "settlement_latency_seconds",
    "Finalize pass duration seconds",
    ["source"],
)
gateway_verifications_total = Counter(
    "gateway_verifications_total",
    "Gateway verify-payment calls by normalized result",
    ["result"],
)
fallback_invocations_total = Counter(
    "fallback_invocations_total",
    "In-process verify-and-settle fallbacks triggered by the webhook handler",
    ["event", "outcome"],
)
side_effect_failures_total = Counter(
    "side_effect_failures_total",
    "Best-effort notification/email failures",
    ["kind"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
