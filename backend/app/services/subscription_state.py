"""Subscription lifecycle.

``ChurchSubscription`` rows are flat; ``state_of`` projects one into a status plus
the data that only makes sense in that status. Every write goes through a
transition function below. Each one locks the row, checks the source status,
mutates, and leaves an audit row and a ``subscription.transition`` log event.
Callers commit.

    TRIALING  -> ACTIVE     first payment, or trial-end renewal charge
    ACTIVE    -> PAST_DUE   renewal charge fails
    PAST_DUE  -> ACTIVE     a later payment for the same cycle succeeds
    PAST_DUE  -> SUSPENDED  grace period over
    SUSPENDED -> CANCELED   retention window over, data purged (terminal)
    *         -> CANCELED   user cancellation, usable until ends_at
    SUSPENDED/CANCELED -> ACTIVE  ``reactivate`` only
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Union

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import InvalidStateTransition, SubscriptionNotFound, TierNotFound
from app.core.logging import get_logger
from app.core.security import now_utc, today_utc
from app.models.addon import ChurchStorageAddon
from app.models.church import Church
from app.models.sms_credit import ChurchSmsCredit, SmsCreditPurchase
from app.models.subscription import BILLING_INTERVAL_MONTHS, ChurchSubscription, PricingTier
from app.services.audit import audit
from app.services.proration import next_billing_after

logger = get_logger(__name__)


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    SUSPENDED = "SUSPENDED"
    CANCELED = "CANCELED"


@dataclass(frozen=True)
class Trialing:
    trial_end_date: date | None
    has_payment_method: bool
    status: SubscriptionStatus = SubscriptionStatus.TRIALING


@dataclass(frozen=True)
class Active:
    current_period_start: date | None
    current_period_end: date | None
    next_billing_date: date | None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE


@dataclass(frozen=True)
class PastDue:
    next_billing_date: date
    grace_period_days: int
    failed_payment_attempts: int
    status: SubscriptionStatus = SubscriptionStatus.PAST_DUE

    @property
    def grace_ends_on(self) -> date:
        return self.next_billing_date + timedelta(days=self.grace_period_days)


@dataclass(frozen=True)
class Suspended:
    suspended_at: datetime | None
    data_retention_end_date: date
    deletion_canceled: bool
    warning_sent: bool
    status: SubscriptionStatus = SubscriptionStatus.SUSPENDED

    def days_until_deletion(self, today: date) -> int:
        return (self.data_retention_end_date - today).days


@dataclass(frozen=True)
class Canceled:
    canceled_at: datetime | None
    ends_at: date | None
    data_deleted: bool
    status: SubscriptionStatus = SubscriptionStatus.CANCELED


SubscriptionState = Union[Trialing, Active, PastDue, Suspended, Canceled]


def state_of(sub: ChurchSubscription) -> SubscriptionState:
    status = SubscriptionStatus(sub.status)
    if status is SubscriptionStatus.TRIALING:
        return Trialing(trial_end_date=sub.trial_end_date, has_payment_method=bool(sub.payment_authorization_code))
    if status is SubscriptionStatus.ACTIVE:
        return Active(
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            next_billing_date=sub.next_billing_date,
        )
    if status is SubscriptionStatus.PAST_DUE:
        return PastDue(
            next_billing_date=sub.next_billing_date or today_utc(),
            grace_period_days=int(sub.grace_period_days or 0),
            failed_payment_attempts=int(sub.failed_payment_attempts or 0),
        )
    if status is SubscriptionStatus.SUSPENDED:
        return Suspended(
            suspended_at=sub.suspended_at,
            data_retention_end_date=sub.data_retention_end_date,
            deletion_canceled=sub.deletion_canceled_at is not None,
            warning_sent=sub.deletion_warning_sent_at is not None,
        )
    return Canceled(canceled_at=sub.canceled_at, ends_at=sub.ends_at, data_deleted=sub.data_deleted_at is not None)


def is_in_grace_period(state: SubscriptionState, today: date) -> bool:
    return isinstance(state, PastDue) and today < state.grace_ends_on


def should_suspend(state: SubscriptionState, today: date) -> bool:
    return isinstance(state, PastDue) and today >= state.grace_ends_on


def has_access(state: SubscriptionState, today: date) -> bool:
    if isinstance(state, (Trialing, Active)):
        return True
    if isinstance(state, PastDue):
        return is_in_grace_period(state, today)
    if isinstance(state, Canceled):
        return not state.data_deleted and state.ends_at is not None and today <= state.ends_at
    return False


def get_subscription(db: Session, church_id) -> ChurchSubscription:
    sub = db.execute(
        sa.select(ChurchSubscription).where(ChurchSubscription.church_id == _as_uuid(church_id))
    ).scalar_one_or_none()
    if sub is None:
        raise SubscriptionNotFound(f"No subscription found for church {church_id}", church_id=str(church_id))
    return sub


def lock_subscription(db: Session, church_id) -> ChurchSubscription:
    """Fetch the row with a row lock held until the caller's transaction ends."""
    # populate_existing would discard unflushed edits on an already loaded row
    db.flush()
    sub = db.execute(
        sa.select(ChurchSubscription)
        .where(ChurchSubscription.church_id == _as_uuid(church_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if sub is None:
        raise SubscriptionNotFound(f"No subscription found for church {church_id}", church_id=str(church_id))
    return sub


def record_change(db: Session, sub: ChurchSubscription, *, operation: str, before: str, actor=None, data: dict | None = None):
    payload = {"before": before, "after": sub.status, **(data or {})}
    audit(db, actor, "church_subscription", sub.id, operation, payload, church_id=sub.church_id)
    logger.info(
        "subscription.transition",
        church_id=str(sub.church_id),
        operation=operation,
        before=before,
        after=sub.status,
        actor=(str(actor) if actor is not None else None),
    )


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _require(sub: ChurchSubscription, allowed: set[SubscriptionStatus], operation: str):
    if SubscriptionStatus(sub.status) not in allowed:
        raise InvalidStateTransition(
            f"Cannot {operation} a subscription in status {sub.status}",
            church_id=str(sub.church_id),
            status=sub.status,
            operation=operation,
        )


def _set_addon_status(db: Session, church_id, *, from_status: str, to_status: str, now: datetime) -> int:
    values = {"status": to_status}
    if to_status == "SUSPENDED":
        values["suspended_at"] = now
    else:
        values["suspended_at"] = None
    result = db.execute(
        sa.update(ChurchStorageAddon)
        .where(ChurchStorageAddon.church_id == church_id, ChurchStorageAddon.status == from_status)
        .values(**values)
    )
    return int(result.rowcount or 0)


def _roll_period(sub: ChurchSubscription, start: date):
    sub.current_period_start = start
    sub.next_billing_date = next_billing_after(start, sub.billing_interval)
    sub.current_period_end = sub.next_billing_date - timedelta(days=1)


# -- creation -----------------------------------------------------------------


def create_trial_subscription(
    db: Session,
    *,
    church_id,
    pricing_tier_id,
    billing_interval: str = "MONTHLY",
    trial_days: int | None = None,
    today: date | None = None,
    actor=None,
) -> ChurchSubscription:
    if billing_interval not in BILLING_INTERVAL_MONTHS:
        raise ValueError(f"Unknown billing interval: {billing_interval}")
    if db.get(PricingTier, _as_uuid(pricing_tier_id)) is None:
        raise TierNotFound(f"Pricing tier {pricing_tier_id} not found")

    today = today or today_utc()
    days = settings.SUBSCRIPTION_TRIAL_DAYS if trial_days is None else trial_days
    trial_end = today + timedelta(days=days)
    sub = ChurchSubscription(
        church_id=_as_uuid(church_id),
        status=SubscriptionStatus.TRIALING.value,
        pricing_tier_id=_as_uuid(pricing_tier_id),
        billing_interval=billing_interval,
        current_period_start=today,
        current_period_end=trial_end - timedelta(days=1),
        next_billing_date=trial_end,
        trial_end_date=trial_end,
        grace_period_days=settings.SUBSCRIPTION_GRACE_PERIOD_DAYS,
    )
    db.add(sub)
    db.flush()
    record_change(db, sub, operation="trial_started", before="NONE", actor=actor, data={"trial_end_date": trial_end})
    return sub


# -- payment driven -----------------------------------------------------------


def activate_from_payment(
    db: Session,
    *,
    church_id,
    pricing_tier_id=None,
    billing_interval: str | None = None,
    authorization_code: str | None = None,
    email: str | None = None,
    today: date | None = None,
    reference: str | None = None,
) -> tuple[ChurchSubscription, bool]:
    """Apply a successful subscription payment.

    Only TRIALING and PAST_DUE move to ACTIVE. A payment landing on a SUSPENDED
    or CANCELED subscription is recorded but leaves the status alone; those need
    ``reactivate``.
    """
    today = today or today_utc()
    sub = lock_subscription(db, church_id)
    before = sub.status

    if authorization_code:
        sub.payment_authorization_code = authorization_code
    if email:
        sub.payment_email = email

    status = SubscriptionStatus(sub.status)
    if status in (SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELED):
        logger.warning(
            "subscription.activation_requires_review",
            church_id=str(sub.church_id),
            status=sub.status,
            reference=reference,
        )
        audit(db, None, "church_subscription", sub.id, "payment_on_closed_subscription", {"reference": reference, "status": sub.status}, church_id=sub.church_id)
        return sub, False
    if status is SubscriptionStatus.ACTIVE:
        return sub, False

    if pricing_tier_id is not None:
        sub.pricing_tier_id = _as_uuid(pricing_tier_id)
    if billing_interval:
        if billing_interval not in BILLING_INTERVAL_MONTHS:
            raise ValueError(f"Unknown billing interval: {billing_interval}")
        sub.billing_interval = billing_interval

    if status is SubscriptionStatus.PAST_DUE and sub.next_billing_date is not None:
        period_start = sub.next_billing_date
    else:
        period_start = today
    _roll_period(sub, period_start)
    sub.status = SubscriptionStatus.ACTIVE.value
    sub.failed_payment_attempts = 0
    record_change(db, sub, operation="activated_by_payment", before=before, data={"reference": reference})
    return sub, True


def apply_renewal(db: Session, *, church_id, used_free_month: bool = False, reference: str | None = None) -> ChurchSubscription:
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}, "renew")
    before = sub.status
    start = sub.next_billing_date or today_utc()
    _roll_period(sub, start)
    if used_free_month:
        if sub.free_months_remaining <= 0:
            raise InvalidStateTransition("No promotional months left to consume", church_id=str(sub.church_id))
        sub.free_months_remaining -= 1
    sub.status = SubscriptionStatus.ACTIVE.value
    sub.failed_payment_attempts = 0
    record_change(
        db,
        sub,
        operation="renewed",
        before=before,
        data={"reference": reference, "used_free_month": used_free_month, "next_billing_date": sub.next_billing_date},
    )
    return sub


def mark_past_due(db: Session, *, church_id, reason: str | None = None) -> ChurchSubscription:
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}, "mark past due")
    before = sub.status
    sub.status = SubscriptionStatus.PAST_DUE.value
    sub.failed_payment_attempts = int(sub.failed_payment_attempts or 0) + 1
    record_change(
        db,
        sub,
        operation="payment_failed",
        before=before,
        data={"reason": reason, "failed_payment_attempts": sub.failed_payment_attempts},
    )
    return sub


# -- time driven --------------------------------------------------------------


def suspend(db: Session, *, church_id, today: date | None = None, now: datetime | None = None) -> ChurchSubscription:
    today = today or today_utc()
    now = now or now_utc()
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.PAST_DUE}, "suspend")
    state = state_of(sub)
    if not should_suspend(state, today):
        raise InvalidStateTransition(
            f"Grace period for church {sub.church_id} runs until {state.grace_ends_on}",
            church_id=str(sub.church_id),
        )
    before = sub.status
    sub.status = SubscriptionStatus.SUSPENDED.value
    sub.suspended_at = now
    sub.data_retention_end_date = today + timedelta(days=settings.DATA_RETENTION_DAYS)
    sub.retention_extension_days = 0
    sub.retention_extension_note = None
    sub.deletion_warning_sent_at = None
    sub.deletion_canceled_at = None
    addons = _set_addon_status(db, sub.church_id, from_status="ACTIVE", to_status="SUSPENDED", now=now)
    record_change(
        db,
        sub,
        operation="suspended",
        before=before,
        data={"data_retention_end_date": sub.data_retention_end_date, "addons_suspended": addons},
    )
    return sub


def mark_data_deleted(db: Session, *, church_id, today: date | None = None, now: datetime | None = None) -> ChurchSubscription:
    """SUSPENDED -> CANCELED with the tenant's billing data purged. Terminal."""
    today = today or today_utc()
    now = now or now_utc()
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.SUSPENDED}, "delete data for")
    if sub.deletion_canceled_at is not None:
        raise InvalidStateTransition("Deletion was canceled for this church", church_id=str(sub.church_id))
    if today < sub.data_retention_end_date:
        raise InvalidStateTransition(
            f"Retention window runs until {sub.data_retention_end_date}",
            church_id=str(sub.church_id),
        )

    before = sub.status
    retention_end = sub.data_retention_end_date
    _purge_church_data(db, sub.church_id, now=now)
    sub.status = SubscriptionStatus.CANCELED.value
    sub.canceled_at = now
    sub.data_deleted_at = now
    sub.data_retention_end_date = None
    sub.auto_renew = False
    sub.payment_authorization_code = None
    sub.pending_tier_change_id = None
    record_change(db, sub, operation="data_deleted", before=before, data={"data_retention_end_date": retention_end})
    return sub


def _purge_church_data(db: Session, church_id, *, now: datetime):
    db.execute(sa.delete(ChurchStorageAddon).where(ChurchStorageAddon.church_id == church_id))
    db.execute(sa.delete(SmsCreditPurchase).where(SmsCreditPurchase.church_id == church_id))
    db.execute(sa.delete(ChurchSmsCredit).where(ChurchSmsCredit.church_id == church_id))
    db.execute(
        sa.update(Church)
        .where(Church.id == church_id)
        .values(
            name=f"deleted_{uuid.UUID(str(church_id)).hex}",
            email=None,
            member_count=0,
            status="deleted",
            data_deleted_at=now,
        )
    )


def downgrade_to_free_tier(db: Session, *, church_id, free_tier: PricingTier, today: date | None = None) -> ChurchSubscription | None:
    """Move a soft-canceled subscription whose paid period has ended onto the free tier."""
    today = today or today_utc()
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.CANCELED}, "downgrade")
    if sub.data_deleted_at is not None or sub.ends_at is None or today <= sub.ends_at:
        return None
    if sub.pricing_tier_id == free_tier.id:
        return None
    before = sub.status
    old_tier_id = sub.pricing_tier_id
    sub.pricing_tier_id = free_tier.id
    sub.cancel_at_period_end = False
    sub.next_billing_date = None
    record_change(
        db,
        sub,
        operation="downgraded_to_free_tier",
        before=before,
        data={"old_tier_id": old_tier_id, "new_tier_id": free_tier.id},
    )
    return sub


# -- user / operator driven ---------------------------------------------------


def cancel(db: Session, *, church_id, actor=None, reason: str | None = None, now: datetime | None = None) -> ChurchSubscription:
    now = now or now_utc()
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}, "cancel")
    before = sub.status
    sub.status = SubscriptionStatus.CANCELED.value
    sub.canceled_at = now
    sub.auto_renew = False
    sub.cancel_at_period_end = True
    sub.ends_at = sub.current_period_end or now.date()
    record_change(db, sub, operation="canceled", before=before, actor=actor, data={"reason": reason, "ends_at": sub.ends_at})
    return sub


def reactivate(db: Session, *, church_id, actor, note: str | None = None, today: date | None = None, now: datetime | None = None) -> ChurchSubscription:
    """Manual SUSPENDED/CANCELED -> ACTIVE. The only path back from those states."""
    today = today or today_utc()
    now = now or now_utc()
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELED}, "reactivate")
    if sub.data_deleted_at is not None:
        raise InvalidStateTransition("Church data has been deleted; subscription cannot be reactivated", church_id=str(sub.church_id))

    before = sub.status
    _roll_period(sub, today)
    sub.status = SubscriptionStatus.ACTIVE.value
    sub.auto_renew = True
    sub.failed_payment_attempts = 0
    sub.canceled_at = None
    sub.cancel_at_period_end = False
    sub.ends_at = None
    sub.suspended_at = None
    sub.data_retention_end_date = None
    sub.retention_extension_days = 0
    sub.retention_extension_note = None
    sub.deletion_warning_sent_at = None
    sub.deletion_canceled_at = None
    addons = _set_addon_status(db, sub.church_id, from_status="SUSPENDED", to_status="ACTIVE", now=now)
    for addon in db.execute(
        sa.select(ChurchStorageAddon).where(ChurchStorageAddon.church_id == sub.church_id, ChurchStorageAddon.status == "ACTIVE")
    ).scalars():
        addon.next_renewal_date = sub.next_billing_date
    record_change(
        db,
        sub,
        operation="reactivated",
        before=before,
        actor=actor,
        data={"note": note, "next_billing_date": sub.next_billing_date, "addons_reactivated": addons},
    )
    return sub


def extend_current_period(db: Session, *, church_id, days: int, reason: str, actor=None) -> ChurchSubscription:
    """Push the paid-through date out by ``days``. Never changes status."""
    if days <= 0:
        raise ValueError("Extension days must be positive")
    sub = lock_subscription(db, church_id)
    _require(sub, {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}, "extend the period of")
    delta = timedelta(days=days)
    if sub.current_period_end is not None:
        sub.current_period_end = sub.current_period_end + delta
    if sub.next_billing_date is not None:
        sub.next_billing_date = sub.next_billing_date + delta
    if sub.status == SubscriptionStatus.TRIALING.value and sub.trial_end_date is not None:
        sub.trial_end_date = sub.trial_end_date + delta
    record_change(
        db,
        sub,
        operation="period_extended",
        before=sub.status,
        actor=actor,
        data={"days": days, "reason": reason, "current_period_end": sub.current_period_end},
    )
    return sub


def grant_grace_period(db: Session, *, church_id, days: int, reason: str, extend: bool = False, actor=None) -> ChurchSubscription:
    max_days = settings.SUBSCRIPTION_MAX_GRACE_PERIOD_DAYS
    if days < 1 or days > max_days:
        raise ValueError(f"Grace period must be between 1 and {max_days} days")
    sub = lock_subscription(db, church_id)
    old_days = int(sub.grace_period_days or 0)
    sub.grace_period_days = min(old_days + days, max_days) if extend else days
    sub.grace_period_reason = reason
    record_change(
        db,
        sub,
        operation="grace_period_granted",
        before=sub.status,
        actor=actor,
        data={"old_days": old_days, "new_days": sub.grace_period_days, "reason": reason},
    )
    return sub


def revoke_grace_period(db: Session, *, church_id, actor=None) -> ChurchSubscription:
    sub = lock_subscription(db, church_id)
    old_days = int(sub.grace_period_days or 0)
    sub.grace_period_days = 0
    sub.grace_period_reason = None
    record_change(db, sub, operation="grace_period_revoked", before=sub.status, actor=actor, data={"old_days": old_days})
    return sub


def grant_promotional_credits(db: Session, *, church_id, months: int, note: str | None = None, actor=None) -> ChurchSubscription:
    if months < 1:
        raise ValueError("Promotional months must be positive")
    sub = lock_subscription(db, church_id)
    sub.free_months_remaining = int(sub.free_months_remaining or 0) + months
    sub.promotional_note = note
    record_change(
        db,
        sub,
        operation="promotional_credits_granted",
        before=sub.status,
        actor=actor,
        data={"months": months, "free_months_remaining": sub.free_months_remaining},
    )
    return sub


def revoke_promotional_credits(db: Session, *, church_id, actor=None) -> ChurchSubscription:
    sub = lock_subscription(db, church_id)
    old = int(sub.free_months_remaining or 0)
    sub.free_months_remaining = 0
    sub.promotional_note = None
    record_change(db, sub, operation="promotional_credits_revoked", before=sub.status, actor=actor, data={"revoked_months": old})
    return sub


def apply_tier(
    db: Session,
    sub: ChurchSubscription,
    *,
    pricing_tier_id,
    billing_interval: str,
    period_start: date,
    next_billing_date: date,
    operation: str,
    actor=None,
    data: dict | None = None,
) -> ChurchSubscription:
    """Switch plan on an already locked row. Status is left as is."""
    old = {"old_tier_id": sub.pricing_tier_id, "old_interval": sub.billing_interval, "old_next_billing_date": sub.next_billing_date}
    sub.pricing_tier_id = _as_uuid(pricing_tier_id)
    sub.billing_interval = billing_interval
    sub.current_period_start = period_start
    sub.next_billing_date = next_billing_date
    sub.current_period_end = next_billing_date - timedelta(days=1)
    record_change(
        db,
        sub,
        operation=operation,
        before=sub.status,
        actor=actor,
        data={**old, "new_tier_id": sub.pricing_tier_id, "new_interval": billing_interval, "next_billing_date": next_billing_date, **(data or {})},
    )
    return sub


def subscription_stats(db: Session) -> dict[str, int]:
    rows = db.execute(
        sa.select(ChurchSubscription.status, sa.func.count()).group_by(ChurchSubscription.status)
    ).all()
    out = {status.value: 0 for status in SubscriptionStatus}
    for status, count in rows:
        out[str(status)] = int(count)
    out["total"] = sum(out[s.value] for s in SubscriptionStatus)
    return out
