import uuid
from datetime import date, datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.security import now_utc
from app.db.base import Base

SUBSCRIPTION_STATUSES = ("TRIALING", "ACTIVE", "PAST_DUE", "SUSPENDED", "CANCELED")

# Interval code -> months covered by one charge.
BILLING_INTERVAL_MONTHS = {
    "MONTHLY": 1,
    "QUARTERLY": 3,
    "BIANNUAL": 6,
    "ANNUAL": 12,
}


class PricingTier(Base):
    __tablename__ = "pricing_tiers"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    min_members: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    max_members: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    monthly_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    quarterly_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    biannual_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    annual_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    is_free: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint("min_members >= 0", name="ck_pricing_tiers_min_members"),
        sa.CheckConstraint("max_members IS NULL OR max_members >= min_members", name="ck_pricing_tiers_member_range"),
    )

    def price_for_interval(self, interval: str) -> Decimal:
        prices = {
            "MONTHLY": self.monthly_price,
            "QUARTERLY": self.quarterly_price,
            "BIANNUAL": self.biannual_price,
            "ANNUAL": self.annual_price,
        }
        if interval not in prices:
            raise ValueError(f"Unknown billing interval: {interval}")
        return Decimal(prices[interval])

    def admits(self, member_count: int) -> bool:
        if member_count < self.min_members:
            return False
        return self.max_members is None or member_count <= self.max_members


class ChurchSubscription(Base):
    """Flat persistence of a church's subscription.

    Only the transition functions in ``app.services.subscription_state`` write to
    these rows; read-side code projects them through ``subscription_state.state_of``.
    """

    __tablename__ = "church_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    church_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="TRIALING")
    pricing_tier_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("pricing_tiers.id"), nullable=False)
    billing_interval: Mapped[str] = mapped_column(sa.Text, nullable=False, default="MONTHLY")

    current_period_start: Mapped[date | None] = mapped_column(sa.Date, nullable=True)
    current_period_end: Mapped[date | None] = mapped_column(sa.Date, nullable=True)
    next_billing_date: Mapped[date | None] = mapped_column(sa.Date, nullable=True)
    trial_end_date: Mapped[date | None] = mapped_column(sa.Date, nullable=True)

    auto_renew: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    payment_authorization_code: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    payment_email: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    failed_payment_attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    grace_period_days: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=7)
    grace_period_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    free_months_remaining: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    promotional_note: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    canceled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    ends_at: Mapped[date | None] = mapped_column(sa.Date, nullable=True)

    suspended_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    data_retention_end_date: Mapped[date | None] = mapped_column(sa.Date, nullable=True)
    retention_extension_days: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    retention_extension_note: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    deletion_warning_sent_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    deletion_canceled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    data_deleted_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    # No FK: tier_change_history already references this table.
    pending_tier_change_id: Mapped[uuid.UUID | None] = mapped_column(sa.Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    pricing_tier: Mapped[PricingTier] = relationship(PricingTier)

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('TRIALING','ACTIVE','PAST_DUE','SUSPENDED','CANCELED')",
            name="ck_church_subscriptions_status",
        ),
        sa.CheckConstraint(
            "billing_interval IN ('MONTHLY','QUARTERLY','BIANNUAL','ANNUAL')",
            name="ck_church_subscriptions_interval",
        ),
        sa.CheckConstraint(
            "(status = 'SUSPENDED' AND data_retention_end_date IS NOT NULL)"
            " OR (status <> 'SUSPENDED' AND data_retention_end_date IS NULL)",
            name="ck_church_subscriptions_retention_iff_suspended",
        ),
        sa.CheckConstraint("failed_payment_attempts >= 0", name="ck_church_subscriptions_failed_attempts"),
        sa.CheckConstraint("free_months_remaining >= 0", name="ck_church_subscriptions_free_months"),
        sa.Index("ix_church_subscriptions_status_next_billing", "status", "next_billing_date"),
        sa.Index("ix_church_subscriptions_retention_end", "data_retention_end_date"),
    )
