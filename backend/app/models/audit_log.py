import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base

class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    church_id: Mapped[uuid.UUID | None] = mapped_column(sa.Uuid, nullable=True)

    entity_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    action: Mapped[str] = mapped_column(sa.Text, nullable=False)
    data: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        sa.Index("ix_audit_entity", "entity_type", "entity_id"),
        sa.Index("ix_audit_church_created", "church_id", sa.text("created_at DESC")),
    )
