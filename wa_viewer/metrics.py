"""
Prometheus metrics for the backup viewer API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Attachment lookup outcome counter (result)

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

# result: direct, indexed, not_found, aborted
attachment_lookups_total = Counter(
    "attachment_lookups_total",
    "Attachment lookup outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def normalize_path(path: str) -> str:
    """
    Collapse identifiers in a request path to keep label cardinality low.

    /api/conversations/<id>/messages -> /api/conversations/{id}/messages
    /api/attachments/<name>          -> /api/attachments/{identifier}
    """
    parts = path.split("?")[0].split("/")
    if len(parts) > 3 and parts[1] == "api":
        if parts[2] == "conversations":
            parts[3] = "{id}"
            if len(parts) > 5 and parts[4] == "messages":
                parts[5] = "{message_id}"
        elif parts[2] == "attachments" and parts[3] != "reindex":
            parts[3] = "{identifier}"
        elif parts[2] == "media":
            parts[3] = "{token}"
    return "/".join(parts)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = normalize_path(path)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_attachment_outcome(result: str) -> None:
    """
    Record an attachment lookup outcome.

    Args:
        result: One of
            - "direct": exact file name found in the folder
            - "indexed": matched through the base name / UUID index
            - "not_found": nothing matched
            - "aborted": client disconnected during the transfer
    """
    attachment_lookups_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
