"""Prometheus metric definitions shared across components."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


job_transitions_total = Counter(
    "job_transitions_total",
    "Job status transitions applied",
    ["job_type", "from_status", "to_status"],
)
optimistic_lock_conflicts_total = Counter(
    "optimistic_lock_conflicts_total",
    "Conditional job writes that matched zero rows",
)
ledger_entries_total = Counter(
    "ledger_entries_total",
    "Ledger entries appended",
    ["account_type", "transaction_type"],
)
ledger_reversals_total = Counter("ledger_reversals_total", "Ledger entries reversed")
escrow_reservations_total = Counter(
    "escrow_reservations_total",
    "Escrow fund reservations by outcome",
    ["outcome"],
)
reconciliation_discrepancies_total = Counter(
    "reconciliation_discrepancies_total",
    "Balance discrepancies recorded",
    ["discrepancy_type", "auto_fixed"],
)
recovery_actions_total = Counter(
    "recovery_actions_total",
    "Stuck/failed job recovery actions",
    ["job_type", "action"],
)
lock_acquire_failures_total = Counter(
    "lock_acquire_failures_total",
    "Named lock acquisitions that timed out",
    ["driver"],
)
schedule_jobs_materialized_total = Counter(
    "schedule_jobs_materialized_total",
    "Jobs materialized from due schedules",
    ["job_type"],
)
settlement_window_seconds = Histogram(
    "settlement_window_seconds",
    "Wall time spent processing one settlement window",
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Payment gateway dispatches by outcome",
    ["outcome"],
)
outbox_pending_total = Gauge("outbox_pending_total", "Current count of outbox events not yet sent")
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
