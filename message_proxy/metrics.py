"""
Prometheus metrics for the message proxy.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Poll loop counters (ticks by result, new messages seen)
- Outbound send outcome counter (result)
- Live update subscriber drop counter
- Push notification counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

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

# result: idle, batch, error
poll_ticks_total = Counter(
    "poll_ticks_total",
    "Poll loop ticks by result",
    labelnames=["result"]
)

poll_messages_total = Counter(
    "poll_messages_total",
    "New store messages picked up by the poll loop"
)

# result: verified, retrying, failed
send_outcomes_total = Counter(
    "send_outcomes_total",
    "Outbound send attempt outcomes",
    labelnames=["result"]
)

broadcast_drops_total = Counter(
    "broadcast_drops_total",
    "Live update subscribers dropped after a failed delivery"
)

# result: sent, error, disabled
notifications_total = Counter(
    "notifications_total",
    "Push notification outcomes",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_poll_tick(result: str, new_messages: int = 0) -> None:
    poll_ticks_total.labels(result=result).inc()
    if new_messages:
        poll_messages_total.inc(new_messages)


def record_send_outcome(result: str) -> None:
    """
    Record the outcome of one dispatch-and-verify cycle.

    Args:
        result: One of "verified", "retrying", "failed"
    """
    send_outcomes_total.labels(result=result).inc()


def record_broadcast_drop() -> None:
    broadcast_drops_total.inc()


def record_notification(result: str) -> None:
    notifications_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
