import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base


class ChurchSmsCredit(Base):
    __tablename__ = "church_sms_credits"

    church_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        sa.ForeignKey("churches.id", ondelete="CASCADE"),
        primary_key=True,
    )
    balance: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_purchased: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint("balance >= 0", name="ck_church_sms_credits_balance"),
    )


class SmsCreditPurchase(Base):
    __tablename__ = "sms_credit_purchases"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    church_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False)
    reference: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    credit_amount: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        sa.Index("ix_sms_credit_purchases_church_created", "church_id", sa.text("created_at DESC")),
    )
