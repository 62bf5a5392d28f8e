"""Prometheus metric definitions shared across components."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


poll_cycles_total = Counter("poll_cycles_total", "Completed poll cycles", ["service", "outcome"])
poll_cycle_duration_seconds = Histogram(
    "poll_cycle_duration_seconds",
    "Wall time of one poll cycle",
    ["service"],
)
sources_polled_total = Counter(
    "sources_polled_total",
    "Per-source poll outcomes",
    ["service", "outcome"],
)
catchup_pages_fetched_total = Counter(
    "catchup_pages_fetched_total",
    "Item pages fetched from the data source",
    ["service"],
)
quota_units_consumed_total = Counter(
    "quota_units_consumed_total",
    "Quota units billed by the data source",
    ["service"],
)
quota_denials_total = Counter("quota_denials_total", "Denied quota reservations", ["service"])
quota_consumed_units = Gauge(
    "quota_consumed_units",
    "Units consumed in the current quota window",
    ["service"],
)
notifications_sent_total = Counter("notifications_sent_total", "Messages delivered", ["service"])
notification_failures_total = Counter(
    "notification_failures_total",
    "Item/subscription pairs skipped after exhausting retries",
    ["service", "error_type"],
)
duplicate_dispatches_skipped_total = Counter(
    "duplicate_dispatches_skipped_total",
    "Dispatches skipped because a ledger entry already existed",
    ["service"],
)
notifications_filtered_total = Counter(
    "notifications_filtered_total",
    "Item/subscription pairs not announced because of content filters",
    ["service", "reason"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
