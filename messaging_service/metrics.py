"""
Prometheus metrics, kept in-process by prometheus-client and served at /metrics.

- http_requests_total{method, path, status}
- request_latency_seconds{method, path}
- messages_ingested_total{provider_type, direction, result}
- message_ingest_seconds{provider_type, direction}
"""

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"],
)

# result: created, duplicate, validation_error, error
messages_ingested_total = Counter(
    "messages_ingested_total",
    "Messages run through the ingestion pipeline, by outcome",
    labelnames=["provider_type", "direction", "result"],
)

message_ingest_seconds = Histogram(
    "message_ingest_seconds",
    "Time spent validating, threading and storing one message",
    labelnames=["provider_type", "direction"],
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Args:
        path: route template when the request matched one
            (e.g. /api/conversations/{conversation_id}), else the raw path
    """
    path = path.split("?")[0]
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_ingest_outcome(
    provider_type: str,
    direction: str,
    result: str,
    duration_seconds: Optional[float] = None,
) -> None:
    messages_ingested_total.labels(provider_type=provider_type, direction=direction, result=result).inc()
    if duration_seconds is not None:
        message_ingest_seconds.labels(provider_type=provider_type, direction=direction).observe(duration_seconds)


def get_metrics() -> bytes:
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
