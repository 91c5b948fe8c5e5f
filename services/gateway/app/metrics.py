from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

HTTP_REQUESTS = Counter(
    "scenechat_http_requests_total",
    "HTTP requests served by the gateway",
    ["method", "path", "status"],
)
HTTP_LATENCY = Histogram(
    "scenechat_http_request_duration_seconds",
    "Time to produce the HTTP response head",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Conversation ids are uuids; collapse them so the label set stays bounded.
UUID_SEGMENT_RE = re.compile(r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


def path_label(path: str) -> str:
    return UUID_SEGMENT_RE.sub("/{id}", path)


def record_http(method: str, path: str, status_code: int, duration_s: float) -> None:
    label = path_label(path)
    HTTP_REQUESTS.labels(method=method, path=label, status=str(status_code)).inc()
    HTTP_LATENCY.labels(method=method, path=label).observe(duration_s)


def metrics_response() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST


__all__ = ["metrics_response", "path_label", "record_http"]
