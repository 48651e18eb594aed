from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

Urgency = Literal["OVERDUE", "CRITICAL", "HIGH", "MEDIUM", "LOW"]


class PendingDeletionOut(BaseModel):
    church_id: str
    church_name: str | None = None
    suspended_at: datetime | None = None
    data_retention_end_date: date
    days_until_deletion: int
    days_until_warning: int
    urgency: Urgency
    retention_extension_days: int
    retention_extension_note: str | None = None
    warning_sent: bool


class ExtendRetentionIn(BaseModel):
    extension_days: int = Field(..., ge=1, le=365)
    note: str | None = Field(default=None, max_length=1000)


class RetentionStatusOut(BaseModel):
    church_id: str
    status: str
    data_retention_end_date: date | None = None
    retention_extension_days: int
    retention_extension_note: str | None = None
    deletion_canceled: bool
