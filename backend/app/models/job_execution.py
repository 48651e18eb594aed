import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base


class ScheduledJobExecution(Base):
    __tablename__ = "scheduled_job_executions"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="RUNNING")
    start_time: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    end_time: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)
    items_processed: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    retry_of_id: Mapped[uuid.UUID | None] = mapped_column(
        sa.Uuid, sa.ForeignKey("scheduled_job_executions.id", ondelete="SET NULL"), nullable=True
    )
    manually_triggered: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    triggered_by: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    canceled: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    canceled_by: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('RUNNING','SUCCESS','FAILED','CANCELED')",
            name="ck_scheduled_job_executions_status",
        ),
        # One RUNNING row per job name.
        sa.Index(
            "uq_scheduled_job_executions_running",
            "job_name",
            unique=True,
            postgresql_where=sa.text("status = 'RUNNING'"),
            sqlite_where=sa.text("status = 'RUNNING'"),
        ),
        sa.Index("ix_scheduled_job_executions_job_start", "job_name", sa.text("start_time DESC")),
        sa.Index("ix_scheduled_job_executions_status", "status"),
    )
