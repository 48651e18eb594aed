import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    church_id: Mapped[uuid.UUID | None] = mapped_column(sa.Uuid, sa.ForeignKey("churches.id", ondelete="SET NULL"), nullable=True)
    intent_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, default="GHS")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="PENDING")
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, default=dict)
    failure_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint("status IN ('PENDING','SUCCESS','FAILED')", name="ck_payment_intents_status"),
        sa.CheckConstraint(
            "intent_type IN ('SUBSCRIPTION','ADDON','RENEWAL','TIER_UPGRADE','SMS_CREDITS')",
            name="ck_payment_intents_type",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_payment_intents_amount"),
        sa.Index("ix_payment_intents_church_created", "church_id", sa.text("created_at DESC")),
        sa.Index("ix_payment_intents_status", "status"),
    )


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    gateway: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reference: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    church_id: Mapped[uuid.UUID | None] = mapped_column(sa.Uuid, nullable=True)
    outcome: Mapped[str] = mapped_column(sa.Text, nullable=False)
    detail: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    payload: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint(
            "outcome IN ('processed','duplicate','ignored','recorded')",
            name="ck_payment_webhook_events_outcome",
        ),
        sa.Index("ix_payment_webhook_events_reference", "reference"),
        sa.Index("ix_payment_webhook_events_received", sa.text("received_at DESC")),
    )
