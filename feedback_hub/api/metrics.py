"""
Custom Prometheus metrics for the job pipeline and notification fanout.

These metrics track queue operations beyond standard HTTP metrics. Workers
running in a separate process expose the same series from their own registry.
"""

from prometheus_client import Counter, Gauge, Histogram

# Producer
jobs_enqueued_total = Counter(
    "feedbackhub_jobs_enqueued_total",
    "Total number of jobs enqueued",
    ["lane"],
)

enqueue_failures_total = Counter(
    "feedbackhub_enqueue_failures_total",
    "Enqueue attempts rejected or failed",
    ["lane", "reason"],  # reason: invalid_lane/validation/store_unavailable
)

# Worker outcomes
jobs_completed_total = Counter(
    "feedbackhub_jobs_completed_total",
    "Total number of jobs completed",
    ["lane"],
)

jobs_skipped_total = Counter(
    "feedbackhub_jobs_skipped_total",
    "Jobs completed as a skip because a referenced resource was missing",
    ["lane"],
)

jobs_retried_total = Counter(
    "feedbackhub_jobs_retried_total",
    "Failed attempts rescheduled for retry",
    ["lane"],
)

jobs_failed_total = Counter(
    "feedbackhub_jobs_failed_total",
    "Jobs that failed permanently",
    ["lane"],
)

jobs_stalled_total = Counter(
    "feedbackhub_jobs_stalled_total",
    "Jobs recovered from an expired claim",
    ["lane"],
)

job_duration_seconds = Histogram(
    "feedbackhub_job_duration_seconds",
    "Duration of a single handler attempt",
    ["lane", "outcome"],  # outcome: completed/retried/failed/skipped
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

jobs_in_progress = Gauge(
    "feedbackhub_jobs_in_progress",
    "Handler attempts currently running in this process",
    ["lane"],
)

# Notifications
notifications_published_total = Counter(
    "feedbackhub_notifications_published_total",
    "Notifications published to a user",
    ["delivered"],  # delivered: yes/no (no live connection)
)

websocket_connections = Gauge(
    "feedbackhub_websocket_connections",
    "Open WebSocket connections in this process",
)

# Audit
audit_write_failures_total = Counter(
    "feedbackhub_audit_write_failures_total",
    "Audit records that could not be written",
)
