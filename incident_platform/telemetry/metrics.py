"""Prometheus metrics definitions."""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

http_request_duration = Histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

alerts_received = Counter(
    "alerts_received_total",
    "Alerts accepted by the webhook and pushed onto the raw queue",
)

alerts_routed = Counter(
    "alerts_routed_total",
    "Alerts routed by the processing worker",
    labelnames=["route"],
)

incident_decisions = Counter(
    "incident_decisions_total",
    "Correlation engine decisions",
    labelnames=["action"],
)

incidents_assigned = Counter(
    "incidents_assigned_total",
    "Incidents assigned to a primary responder",
)

escalations_total = Counter(
    "escalations_total",
    "Escalation entries processed",
    labelnames=["outcome"],
)

notifications_total = Counter(
    "notifications_total",
    "Notification requests handled by the dispatch worker",
    labelnames=["type", "outcome"],
)

dead_letters_total = Counter(
    "dead_letters_total",
    "Messages moved to a dead-letter queue",
    labelnames=["queue"],
)


def get_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
