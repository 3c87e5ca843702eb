"""Outbox enqueue helper and the Kafka publisher loop."""

import asyncio

from payledger.common.events import EventEnvelope, KafkaBus
from payledger.common.logging import logger
from payledger.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from payledger.services.outbox.models import OutboxEvent


def enqueue_event(
    db,
    clock,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict,
    business_id: str | None = None,
) -> OutboxEvent:
    """Stage an event in the caller's transaction; topic equals event type."""

    now = clock.now()
    envelope = EventEnvelope(
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        business_id=business_id,
        occurred_at=now.isoformat(),
        payload=payload,
    )
    row = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        event_type=event_type,
        topic=event_type,
        payload=envelope.model_dump(),
        created_at=now,
    )
    db.add(row)
    return row


class OutboxPublisher:
    """Publishes committed outbox rows to Kafka."""

    def __init__(self, session_factory, settings, clock, bus: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.bus = bus or KafkaBus(settings.kafka_bootstrap_servers)

    async def publish_batch(self, limit: int = 100) -> dict:
        """Claim one batch, publish it and return sent/requeued counts."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, self.clock.now(), limit=limit)
            db.commit()
        sent = requeued = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    db.commit()
                requeued += 1
                continue
            with self.session_factory() as db:
                mark_outbox_sent(db, OutboxEvent, row["id"], self.clock.now())
                db.commit()
            sent += 1
        with self.session_factory() as db:
            update_outbox_backlog_metrics(db, OutboxEvent, self.clock.now())
        return {"claimed": len(rows), "sent": sent, "requeued": requeued}

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_batch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error error=%s", exc)
            await asyncio.sleep(interval_seconds)
