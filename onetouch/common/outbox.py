"""Transactional outbox for payment state-change events.

`enqueue_state_change` is called inside the same transaction as the payment
update; `publish_pending` claims a batch and pushes it to Kafka. Helpers take
the outbox model as a parameter so the common package does not import
service models.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from onetouch.common.events import STATE_CHANGED_TOPIC, EventEnvelope, KafkaBus
from onetouch.common.logging import logger, request_id_ctx
from onetouch.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_state_change(db, outbox_model, payment, from_state: str | None, to_state: str, reason: str) -> None:
    """Stage one `payments.state_changed` event for `payment`."""

    envelope = EventEnvelope(
        event_type="payments.state_changed",
        aggregate_id=payment.payment_id,
        trace_id=request_id_ctx.get() or payment.payment_id,
        payload={
            "order_ref": payment.order_ref,
            "flow": payment.flow,
            "provider_payment_id": payment.provider_payment_id,
            "from_state": from_state,
            "to_state": to_state,
            "reason": reason,
            "transaction_no": payment.transaction_no,
            "failure_reason": payment.failure_reason,
        },
    )
    db.add(
        outbox_model(
            aggregate_type="payment",
            aggregate_id=payment.payment_id,
            event_type=envelope.event_type,
            topic=STATE_CHANGED_TOPIC,
            payload=envelope.model_dump(),
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim pending rows, plus PROCESSING rows whose publisher went away."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def _set_status(db, outbox_model, event_id: str, status: str) -> None:
    table = outbox_model.__table__
    sent_at = datetime.now(timezone.utc) if status == "SENT" else None
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status=status, sent_at=sent_at)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    table = outbox_model.__table__
    pending = table.c.status.in_(("PENDING", "PROCESSING"))
    pending_count = db.execute(select(func.count()).select_from(table).where(pending)).scalar_one()
    oldest_pending = db.execute(select(func.min(table.c.created_at)).where(pending)).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def publish_pending(session_factory, outbox_model, bus: KafkaBus, service_name: str) -> int:
    """Publish one claimed batch; failed rows go back to PENDING. Returns rows sent."""

    with session_factory() as db:
        rows = claim_outbox_batch(db, outbox_model)
        update_outbox_backlog_metrics(db, outbox_model, service_name)
        db.commit()

    sent = 0
    for row in rows:
        try:
            await bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            status = "SENT"
            sent += 1
        except Exception as exc:
            logger.exception("outbox publish failed event_id=%s: %s", row["id"], exc)
            status = "PENDING"
        with session_factory() as db:
            _set_status(db, outbox_model, row["id"], status)
            update_outbox_backlog_metrics(db, outbox_model, service_name)
            db.commit()
    return sent
