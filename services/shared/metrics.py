"""Prometheus metrics for the pipeline stages.

Shared by the API process and the worker; both expose the default registry.

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram

# Extraction
extraction_jobs_total = Counter(
    "extraction_jobs_total",
    "Extraction jobs by terminal outcome",
    ["outcome"],  # completed, retrying, failed
)

extraction_step_duration_seconds = Histogram(
    "extraction_step_duration_seconds",
    "Duration of a single extraction step",
    ["step"],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

review_decisions_total = Counter(
    "review_decisions_total",
    "Extraction results routed to review or straight to approval",
    ["route"],  # review, auto
)

# Review
corrections_applied_total = Counter(
    "corrections_applied_total",
    "Field corrections appended to invoices",
)

invoices_approved_total = Counter(
    "invoices_approved_total",
    "Invoices approved for submission",
)

# Submission
submissions_total = Counter(
    "submissions_total",
    "Submission attempts by outcome",
    ["outcome"],  # accepted, rejected, retrying, failed, pending
)

platform_requests_total = Counter(
    "platform_requests_total",
    "Requests made to the national e-invoicing platform",
    ["operation", "status"],
)

# Events
events_dispatched_total = Counter(
    "events_dispatched_total",
    "Events handled by the dispatcher",
    ["event", "status"],  # ok, ignored, error
)
