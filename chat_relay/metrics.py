"""
Prometheus metrics for the chat relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat message outcome counter (result)
- Sweep outcome counter and swept message counter
- History snapshot load counter
- Connected sessions gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: accepted, validation_error, persistence_error
chat_messages_total = Counter(
    "chat_messages_total",
    "Total inbound chat message outcomes",
    labelnames=["result"]
)

# result: ok, error
sweeps_total = Counter(
    "sweeps_total",
    "Total retention sweep runs",
    labelnames=["result"]
)

# result: sent, persistence_error
history_loads_total = Counter(
    "history_loads_total",
    "Total history snapshot loads on connect",
    labelnames=["result"]
)

messages_swept_total = Counter(
    "messages_swept_total",
    "Total messages deleted by retention sweeps"
)

connected_sessions = Gauge(
    "connected_sessions",
    "Currently connected WebSocket sessions"
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


def record_chat_outcome(result: str) -> None:
    """
    Record the outcome of one inbound chat message.

    Args:
        result: One of "accepted", "validation_error", "persistence_error"
    """
    chat_messages_total.labels(result=result).inc()


def record_history_load(result: str) -> None:
    """Record whether a joining session got its history snapshot."""
    history_loads_total.labels(result=result).inc()


def record_sweep(result: str, deleted: int = 0) -> None:
    """Record one sweep run and how many messages it removed."""
    sweeps_total.labels(result=result).inc()
    if deleted:
        messages_swept_total.inc(deleted)


def set_connected_sessions(count: int) -> None:
    connected_sessions.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type string for Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
