"""Prometheus metrics for API service.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Invoice upload metrics

Pipeline metrics (extraction, review, submission) live in
``services.shared.metrics`` and share the default registry.

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Upload metrics
invoices_uploaded_total = Counter(
    "invoices_uploaded_total",
    "Invoice images uploaded",
    ["status"],  # success, failed
)

invoice_upload_size_bytes = Histogram(
    "invoice_upload_size_bytes",
    "Invoice upload size in bytes",
    buckets=(1024, 10240, 102400, 1048576, 10485760),  # 1KB to 10MB
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
