"""Prometheus metric definitions for notification dispatch."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


feed_events_total = Counter(
    "feed_events_total",
    "Order change events received from the change feed",
    ["service", "trigger", "change_type"],
)
dispatch_outcomes_total = Counter(
    "dispatch_outcomes_total",
    "Dispatch attempts by final outcome",
    ["service", "trigger", "outcome"],
)
lease_decisions_total = Counter(
    "lease_decisions_total",
    "Lease transaction decisions",
    ["service", "trigger", "decision"],
)
notification_send_seconds = Histogram(
    "notification_send_seconds",
    "Outbound notifier call duration seconds",
    ["service", "trigger"],
)
send_failures_total = Counter(
    "send_failures_total",
    "Failed outbound notification sends",
    ["service", "trigger", "error_kind"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Events skipped by the session known-sent cache",
    ["service", "trigger"],
)
known_sent_entries = Gauge(
    "known_sent_entries",
    "Current size of the session known-sent cache",
    ["service", "trigger"],
)
outcome_write_errors_total = Counter(
    "outcome_write_errors_total",
    "Outcome or lease-release transactions that could not be committed",
    ["service", "trigger"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
