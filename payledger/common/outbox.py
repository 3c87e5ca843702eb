"""Claim/mark/requeue helpers for the transactional outbox table.

The helpers take the outbox model as an argument and stick to a select-then-update
claim so they run on PostgreSQL (row locks, SKIP LOCKED) and SQLite alike.
"""

from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update

from payledger.common.clock import as_utc
from payledger.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def claim_outbox_batch(
    db, outbox_model, now: datetime, limit: int = 100, processing_timeout_seconds: int = 30
) -> list[dict]:
    """Claim a batch of pending or stale rows for publishing."""

    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    ids = (
        db.execute(
            select(outbox_model.id)
            .where(
                or_(
                    outbox_model.status == "PENDING",
                    (outbox_model.status == "PROCESSING") & (outbox_model.claimed_at < stale_before),
                )
            )
            .order_by(outbox_model.created_at, outbox_model.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    if not ids:
        return []
    db.execute(update(outbox_model).where(outbox_model.id.in_(ids)).values(status="PROCESSING", claimed_at=now))
    rows = db.execute(select(outbox_model).where(outbox_model.id.in_(ids)).order_by(outbox_model.created_at)).scalars()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str, now: datetime) -> None:
    """Mark one claimed outbox row as delivered."""

    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == "PROCESSING")
        .values(status="SENT", sent_at=now)
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    db.execute(
        update(outbox_model)
        .where(outbox_model.id == event_id, outbox_model.status == "PROCESSING")
        .values(status="PENDING", claimed_at=None, attempts=outbox_model.attempts + 1)
    )


def update_outbox_backlog_metrics(db, outbox_model, now: datetime) -> int:
    """Update gauges for pending outbox depth and oldest age; returns the depth."""

    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = db.execute(
        select(func.count()).select_from(outbox_model).where(outbox_model.status.in_(pending_statuses))
    ).scalar_one()
    oldest_pending = db.execute(
        select(func.min(outbox_model.created_at)).where(outbox_model.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (now - as_utc(oldest_pending)).total_seconds())
    outbox_pending_total.set(float(pending_count))
    outbox_oldest_pending_age_seconds.set(age_seconds)
    return int(pending_count)
