from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ReactivateSubscriptionIn(BaseModel):
    note: str | None = Field(default=None, max_length=1000)


class GrantGracePeriodIn(BaseModel):
    days: int = Field(..., ge=1, le=30)
    reason: str = Field(..., min_length=1, max_length=1000)
    extend: bool = False


class GrantPromotionalCreditsIn(BaseModel):
    months: int = Field(..., ge=1, le=24)
    note: str | None = Field(default=None, max_length=1000)


class SubscriptionStatsOut(BaseModel):
    TRIALING: int
    ACTIVE: int
    PAST_DUE: int
    SUSPENDED: int
    CANCELED: int
    total: int


class PartnershipCodeCreateIn(BaseModel):
    code: str = Field(..., min_length=2, max_length=64)
    grace_period_days: int = Field(..., ge=1, le=365)
    description: str | None = Field(default=None, max_length=1000)
    max_uses: int | None = Field(default=None, ge=1)
    max_uses_per_church: int = Field(default=1, ge=1)
    expires_at: datetime | None = None


class PartnershipCodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str | None = None
    grace_period_days: int
    is_active: bool
    expires_at: datetime | None = None
    max_uses: int | None = None
    current_uses: int
    max_uses_per_church: int
    created_at: datetime


class PartnershipCodeStatsOut(BaseModel):
    code: str
    is_active: bool
    current_uses: int
    max_uses: int | None = None
    remaining_uses: int | None = None
    churches: int
    grace_days_granted: int
