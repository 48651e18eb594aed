import uuid
from datetime import date, datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base


class TierChangeHistory(Base):
    __tablename__ = "tier_change_history"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    church_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False)
    subscription_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("church_subscriptions.id", ondelete="CASCADE"), nullable=False)

    old_tier_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("pricing_tiers.id"), nullable=False)
    new_tier_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("pricing_tiers.id"), nullable=False)
    old_interval: Mapped[str] = mapped_column(sa.Text, nullable=False)
    new_interval: Mapped[str] = mapped_column(sa.Text, nullable=False)
    change_type: Mapped[str] = mapped_column(sa.Text, nullable=False)

    days_remaining: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    total_days: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    old_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    new_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    unused_credit: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    new_charge: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)

    old_next_billing_date: Mapped[date | None] = mapped_column(sa.Date, nullable=True)
    new_next_billing_date: Mapped[date | None] = mapped_column(sa.Date, nullable=True)

    payment_reference: Mapped[str | None] = mapped_column(sa.Text, nullable=True, unique=True)
    outcome: Mapped[str] = mapped_column(sa.Text, nullable=False, default="PENDING")
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.CheckConstraint(
            "outcome IN ('PENDING','COMPLETED','ROLLED_BACK','FAILED')",
            name="ck_tier_change_history_outcome",
        ),
        sa.CheckConstraint(
            "change_type IN ('TIER_UPGRADE','TIER_DOWNGRADE','INTERVAL_CHANGE','COMBINED')",
            name="ck_tier_change_history_change_type",
        ),
        sa.Index("ix_tier_change_history_church_requested", "church_id", sa.text("requested_at DESC")),
    )
