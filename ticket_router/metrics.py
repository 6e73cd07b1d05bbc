"""
Prometheus metrics.

The webhook always answers 200, so these counters (and the logs) are where
failed or degraded deliveries show up.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, reused, conflict_reused, duplicate, queued, ignored,
# degraded, updated, acknowledged, error, validation_error
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook envelopes by event type and processing result",
    labelnames=["event", "result"]
)

# outcome: created, reused, conflict_reused, degraded
ticket_routing_total = Counter(
    "ticket_routing_total",
    "Ticket resolution outcomes for inbound messages",
    labelnames=["outcome"]
)

# outcome: ok, unreachable or the HTTP status the gateway answered with
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Evolution API calls by operation and outcome",
    labelnames=["operation", "outcome"]
)

message_batch_pending = Gauge(
    "message_batch_pending",
    "Inbound messages queued for a batched write"
)

batch_messages_dropped_total = Counter(
    "batch_messages_dropped_total",
    "Queued messages dropped after repeated failed writes"
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """`path` should be the route template, not the concrete URL."""
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(event: str, result: str) -> None:
    webhook_events_total.labels(event=event or "unknown", result=result).inc()


def record_routing_outcome(outcome: str) -> None:
    ticket_routing_total.labels(outcome=outcome).inc()


def record_gateway_call(operation: str, outcome: str) -> None:
    gateway_requests_total.labels(operation=operation, outcome=outcome).inc()


def set_batch_pending(count: int) -> None:
    message_batch_pending.set(count)


def record_batch_dropped() -> None:
    batch_messages_dropped_total.inc()


def get_metrics() -> bytes:
    """Current metrics in the Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
