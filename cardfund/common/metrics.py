"""Prometheus metric definitions for the deposit pipeline."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


monitor_cycles_total = Counter("monitor_cycles_total", "Batch planning cycles fired", ["service"])
monitor_batches_enqueued_total = Counter(
    "monitor_batches_enqueued_total",
    "monitor-batch jobs enqueued by the planner",
    ["service"],
)
accounts_polled_total = Counter(
    "accounts_polled_total",
    "Accounts polled against the ledger indexer",
    ["service", "result"],
)
indexer_requests_total = Counter(
    "indexer_requests_total",
    "Ledger indexer requests by outcome",
    ["service", "status"],
)
issuer_requests_total = Counter(
    "issuer_requests_total",
    "Issuer API requests by operation and outcome",
    ["service", "operation", "status"],
)
transfers_observed_total = Counter(
    "transfers_observed_total",
    "Final transfers returned by the poller",
    ["service"],
)
transfers_enqueued_total = Counter(
    "transfers_enqueued_total",
    "Transfers handed to the reconcile queue",
    ["service"],
)
duplicate_transfers_skipped_total = Counter(
    "duplicate_transfers_skipped_total",
    "Transfers already recorded (dedup gate or commit backstop)",
    ["service", "stage"],
)
deposits_recorded_total = Counter("deposits_recorded_total", "Deposit transactions recorded", ["service"])
reconcile_results_total = Counter(
    "reconcile_results_total",
    "Reconciliation step results by kind",
    ["service", "status"],
)
jobs_processed_total = Counter(
    "jobs_processed_total",
    "Job executions by type and outcome",
    ["service", "job_type", "outcome"],
)
job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Job handler duration seconds",
    ["service", "job_type"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "job_type"])
jobs_failed_total = Counter(
    "jobs_failed_total",
    "Jobs moved to FAILED (retry budget exhausted or expired)",
    ["service", "job_type", "reason"],
)
applications_rejected_total = Counter(
    "applications_rejected_total",
    "Stale issuer applications rejected by the sweeper",
    ["service", "result"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
