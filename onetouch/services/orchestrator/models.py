"""Orchestrator database models.

This DB is the source of truth for OneTouch payment state, the transition
timeline, refunds, and the state-change outbox.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from onetouch.common.db import Base, JSONType


class Payment(Base):
    """Current state of one payment attempt."""

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_ref: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    flow: Mapped[str] = mapped_column(String)
    # Provider-side id: assigned by payment/init (token flow) or chosen by us (no-registration flow).
    provider_payment_id: Mapped[str | None] = mapped_column(String, unique=True, index=True, nullable=True)
    amount_minor: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    recipient: Mapped[str] = mapped_column(String)
    recipient_type: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    show: Mapped[str] = mapped_column(String, default="")
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_no: Mapped[str | None] = mapped_column(String, nullable=True)
    device_id: Mapped[str] = mapped_column(String)
    token_value: Mapped[str | None] = mapped_column(String, nullable=True)
    token_kin: Mapped[str | None] = mapped_column(String, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pin_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fee_minor: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_minor: Mapped[int | None] = mapped_column(Integer, nullable=True)
    saved_token: Mapped[str | None] = mapped_column(String, nullable=True)
    saved_pin_id: Mapped[str | None] = mapped_column(String, nullable=True)
    refunded_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PaymentTimeline(Base):
    """Immutable audit trail of every state transition."""

    __tablename__ = "payment_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentRefund(Base):
    """One refund request and its provider answer."""

    __tablename__ = "payment_refunds"

    refund_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), index=True)
    amount_minor: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    provider_refund_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """State-change events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
