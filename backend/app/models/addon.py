import uuid
from datetime import date, datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.security import now_utc
from app.db.base import Base


class StorageAddon(Base):
    __tablename__ = "storage_addons"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    storage_gb: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    monthly_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    __table_args__ = (
        sa.CheckConstraint("storage_gb > 0", name="ck_storage_addons_storage_gb"),
    )


class ChurchStorageAddon(Base):
    __tablename__ = "church_storage_addons"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    church_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False)
    storage_addon_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("storage_addons.id"), nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="ACTIVE")
    purchase_reference: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    purchase_price: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    prorated_days: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    current_period_start: Mapped[date] = mapped_column(sa.Date, nullable=False)
    next_renewal_date: Mapped[date | None] = mapped_column(sa.Date, nullable=True)
    purchased_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    suspended_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    storage_addon: Mapped[StorageAddon] = relationship(StorageAddon)

    __table_args__ = (
        sa.CheckConstraint("status IN ('ACTIVE','SUSPENDED','CANCELED')", name="ck_church_storage_addons_status"),
        sa.Index("ix_church_storage_addons_church_status", "church_id", "status"),
    )
