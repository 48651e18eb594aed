from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

SubscriptionStatus = Literal["TRIALING", "ACTIVE", "PAST_DUE", "SUSPENDED", "CANCELED"]
BillingInterval = Literal["MONTHLY", "QUARTERLY", "BIANNUAL", "ANNUAL"]
ChangeType = Literal["TIER_UPGRADE", "TIER_DOWNGRADE", "INTERVAL_CHANGE", "COMBINED"]


class PricingTierOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    min_members: int
    max_members: int | None = None
    monthly_price: Decimal
    quarterly_price: Decimal
    biannual_price: Decimal
    annual_price: Decimal
    is_free: bool


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    church_id: UUID
    status: SubscriptionStatus
    pricing_tier: PricingTierOut
    billing_interval: BillingInterval
    current_period_start: date | None = None
    current_period_end: date | None = None
    next_billing_date: date | None = None
    trial_end_date: date | None = None
    auto_renew: bool
    has_payment_method: bool = False
    failed_payment_attempts: int
    grace_period_days: int
    free_months_remaining: int
    canceled_at: datetime | None = None
    ends_at: date | None = None
    suspended_at: datetime | None = None
    data_retention_end_date: date | None = None
    pending_tier_change_id: UUID | None = None
    has_access: bool = True


class PaymentIntentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    intent_type: str
    amount: Decimal
    currency: str
    status: Literal["PENDING", "SUCCESS", "FAILED"]
    description: str | None = None
    created_at: datetime


class SubscriptionPaymentIn(BaseModel):
    tier_code: str | None = Field(default=None, max_length=64)
    billing_interval: BillingInterval | None = None
    email: str | None = Field(default=None, max_length=320)


class CancelSubscriptionIn(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class TierChangeIn(BaseModel):
    new_tier_code: str = Field(..., min_length=1, max_length=64)
    new_interval: BillingInterval | None = None
    reason: str | None = Field(default=None, max_length=1000)


class TierChangePreviewOut(BaseModel):
    change_type: ChangeType
    old_price: Decimal
    new_price: Decimal
    unused_credit: Decimal
    new_charge: Decimal
    net_amount: Decimal
    days_remaining: int
    total_days: int
    applies_immediately: bool
    new_period_start: date
    new_next_billing_date: date


class TierChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    change_type: ChangeType
    outcome: Literal["PENDING", "COMPLETED", "ROLLED_BACK", "FAILED"]
    old_tier_id: UUID
    new_tier_id: UUID
    old_interval: BillingInterval
    new_interval: BillingInterval
    unused_credit: Decimal
    new_charge: Decimal
    net_amount: Decimal
    payment_reference: str | None = None
    new_next_billing_date: date | None = None
    requested_at: datetime
    completed_at: datetime | None = None


class TierChangeResultOut(BaseModel):
    tier_change: TierChangeOut
    payment: PaymentIntentOut | None = None


class TierChangeRollbackIn(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class PartnershipCodeApplyIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class SmsCreditPurchaseIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
