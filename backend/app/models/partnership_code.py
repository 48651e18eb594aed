import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base


class PartnershipCode(Base):
    __tablename__ = "partnership_codes"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    grace_period_days: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    max_uses: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    max_uses_per_church: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    created_by: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint("grace_period_days > 0", name="ck_partnership_codes_grace_days"),
        sa.CheckConstraint("max_uses IS NULL OR max_uses > 0", name="ck_partnership_codes_max_uses"),
        sa.CheckConstraint("max_uses_per_church > 0", name="ck_partnership_codes_max_uses_per_church"),
    )


class PartnershipCodeUsage(Base):
    __tablename__ = "partnership_code_usages"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    partnership_code_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("partnership_codes.id", ondelete="CASCADE"), nullable=False
    )
    church_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, sa.ForeignKey("churches.id", ondelete="CASCADE"), nullable=False)
    grace_period_days_granted: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    used_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        sa.Index("ix_partnership_code_usages_code_church", "partnership_code_id", "church_id"),
    )
