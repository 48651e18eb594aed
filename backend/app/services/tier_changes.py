from __future__ import annotations

from datetime import date

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import (
    IneligibleForUpgrade,
    InvalidStateTransition,
    PaymentNotFound,
    PendingTierChangeExists,
    TierNotFound,
)
from app.core.logging import get_logger
from app.core.security import now_utc, today_utc
from app.models.church import Church
from app.models.payment import PaymentIntent
from app.models.subscription import BILLING_INTERVAL_MONTHS, ChurchSubscription, PricingTier
from app.models.tier_change import TierChangeHistory
from app.services import payment_ledger
from app.services.audit import audit
from app.services.proration import TierChangeQuote, next_billing_after, quote_tier_change
from app.services.subscription_state import SubscriptionStatus, apply_tier, get_subscription, lock_subscription

logger = get_logger(__name__)


def get_tier_by_code(db: Session, code: str) -> PricingTier:
    tier = db.execute(
        sa.select(PricingTier).where(sa.func.upper(PricingTier.code) == (code or "").strip().upper())
    ).scalar_one_or_none()
    if tier is None or not tier.is_active:
        raise TierNotFound(f"Pricing tier {code} not found")
    return tier


def _validate_change(db: Session, sub: ChurchSubscription, new_tier: PricingTier, new_interval: str):
    if new_interval not in BILLING_INTERVAL_MONTHS:
        raise ValueError(f"Unknown billing interval: {new_interval}")
    if sub.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidStateTransition(
            f"Tier changes need an ACTIVE subscription, church {sub.church_id} is {sub.status}",
            church_id=str(sub.church_id),
        )
    if sub.pending_tier_change_id is not None:
        raise PendingTierChangeExists(
            f"Church {sub.church_id} already has a tier change awaiting payment",
            tier_change_id=str(sub.pending_tier_change_id),
        )
    if new_tier.id == sub.pricing_tier_id and new_interval == sub.billing_interval:
        raise InvalidStateTransition("Subscription is already on this tier and interval", church_id=str(sub.church_id))
    church = db.get(Church, sub.church_id)
    member_count = int(church.member_count if church else 0)
    if not new_tier.admits(member_count):
        raise IneligibleForUpgrade(
            f"Tier {new_tier.code} covers {new_tier.min_members}-{new_tier.max_members or 'unlimited'} members, church has {member_count}",
            tier=new_tier.code,
            member_count=member_count,
        )


def _quote(sub: ChurchSubscription, new_tier: PricingTier, new_interval: str, today: date) -> TierChangeQuote:
    return quote_tier_change(
        old_price=sub.pricing_tier.price_for_interval(sub.billing_interval),
        new_price=new_tier.price_for_interval(new_interval),
        old_interval=sub.billing_interval,
        new_interval=new_interval,
        tier_changed=new_tier.id != sub.pricing_tier_id,
        period_start=sub.current_period_start,
        period_end=sub.next_billing_date,
        effective_date=today,
    )


def preview_tier_change(
    db: Session,
    *,
    church_id,
    new_tier_code: str,
    new_interval: str | None = None,
    today: date | None = None,
) -> TierChangeQuote:
    today = today or today_utc()
    sub = get_subscription(db, church_id)
    new_tier = get_tier_by_code(db, new_tier_code)
    interval = new_interval or sub.billing_interval
    _validate_change(db, sub, new_tier, interval)
    return _quote(sub, new_tier, interval, today)


def initiate_tier_change(
    db: Session,
    *,
    church_id,
    new_tier_code: str,
    new_interval: str | None = None,
    actor=None,
    reason: str | None = None,
    today: date | None = None,
) -> tuple[TierChangeHistory, PaymentIntent | None]:
    """Start a tier/interval switch.

    When the quote nets to zero or less the switch is applied at once and no
    intent is created. Otherwise a ``TIER_UPGRADE-`` intent is opened and the
    switch waits for the gateway to confirm it.
    """
    today = today or today_utc()
    sub = lock_subscription(db, church_id)
    new_tier = get_tier_by_code(db, new_tier_code)
    interval = new_interval or sub.billing_interval
    _validate_change(db, sub, new_tier, interval)
    quote = _quote(sub, new_tier, interval, today)

    history = TierChangeHistory(
        church_id=sub.church_id,
        subscription_id=sub.id,
        old_tier_id=sub.pricing_tier_id,
        new_tier_id=new_tier.id,
        old_interval=sub.billing_interval,
        new_interval=interval,
        change_type=quote.change_type,
        days_remaining=quote.proration.days_remaining,
        total_days=quote.proration.total_days,
        old_price=quote.old_price,
        new_price=quote.new_price,
        unused_credit=quote.proration.unused_credit,
        new_charge=quote.proration.new_charge,
        net_amount=quote.net_amount,
        old_next_billing_date=sub.next_billing_date,
        new_next_billing_date=quote.new_next_billing_date,
        reason=reason,
        requested_by=(str(actor) if actor is not None else None),
    )

    if quote.applies_immediately:
        history.outcome = "COMPLETED"
        history.completed_at = now_utc()
        db.add(history)
        db.flush()
        apply_tier(
            db,
            sub,
            pricing_tier_id=new_tier.id,
            billing_interval=interval,
            period_start=quote.new_period_start,
            next_billing_date=quote.new_next_billing_date,
            operation="tier_changed",
            actor=actor,
            data={"tier_change_id": history.id, "net_amount": quote.net_amount},
        )
        return history, None

    intent = payment_ledger.create_intent(
        db,
        church_id=sub.church_id,
        intent_type="TIER_UPGRADE",
        amount=quote.net_amount,
        description=f"Tier change to {new_tier.name} ({interval})",
        metadata={
            "church_id": str(sub.church_id),
            "new_tier_id": str(new_tier.id),
            "new_interval": interval,
            "change_type": quote.change_type,
        },
    )
    history.payment_reference = intent.reference
    db.add(history)
    db.flush()
    intent.meta = {**intent.meta, "tier_change_id": str(history.id)}
    sub.pending_tier_change_id = history.id
    logger.info(
        "tier_change.initiated",
        church_id=str(sub.church_id),
        reference=intent.reference,
        change_type=quote.change_type,
        net_amount=str(quote.net_amount),
    )
    return history, intent


def history_for_reference(db: Session, reference: str) -> TierChangeHistory | None:
    return db.execute(
        sa.select(TierChangeHistory).where(TierChangeHistory.payment_reference == reference)
    ).scalar_one_or_none()


def complete_tier_change(db: Session, *, reference: str, today: date | None = None) -> TierChangeHistory | None:
    """Apply a paid tier change. Called once the intent has flipped to SUCCESS."""
    today = today or today_utc()
    history = history_for_reference(db, reference)
    if history is None:
        raise PaymentNotFound(f"No tier change recorded for {reference}", reference=reference)
    sub = lock_subscription(db, history.church_id)
    if history.outcome != "PENDING":
        logger.info("tier_change.already_closed", reference=reference, outcome=history.outcome)
        return None

    if history.change_type in ("INTERVAL_CHANGE", "COMBINED"):
        period_start = today
        next_billing = next_billing_after(today, history.new_interval)
    else:
        # A tier-only change never moves the billing cycle; a renewal may have rolled it since initiation.
        if history.old_next_billing_date is not None and sub.next_billing_date != history.old_next_billing_date:
            logger.warning(
                "tier_change.period_rolled",
                church_id=str(sub.church_id),
                reference=reference,
                quoted_next_billing_date=str(history.old_next_billing_date),
                next_billing_date=str(sub.next_billing_date),
            )
        period_start = sub.current_period_start or today
        next_billing = sub.next_billing_date or history.new_next_billing_date

    apply_tier(
        db,
        sub,
        pricing_tier_id=history.new_tier_id,
        billing_interval=history.new_interval,
        period_start=period_start,
        next_billing_date=next_billing,
        operation="tier_changed",
        data={"tier_change_id": history.id, "reference": reference},
    )
    history.outcome = "COMPLETED"
    history.completed_at = now_utc()
    history.new_next_billing_date = next_billing
    if sub.pending_tier_change_id == history.id:
        sub.pending_tier_change_id = None
    return history


def _close_pending(db: Session, history: TierChangeHistory, *, outcome: str, reason: str | None):
    sub = lock_subscription(db, history.church_id)
    history.outcome = outcome
    history.completed_at = now_utc()
    history.reason = reason or history.reason
    if sub.pending_tier_change_id == history.id:
        sub.pending_tier_change_id = None
    logger.info("tier_change.closed", church_id=str(history.church_id), reference=history.payment_reference, outcome=outcome)


def fail_tier_change(db: Session, *, reference: str, reason: str | None) -> TierChangeHistory | None:
    history = history_for_reference(db, reference)
    if history is None or history.outcome != "PENDING":
        return None
    _close_pending(db, history, outcome="FAILED", reason=reason)
    return history


def rollback_tier_change(db: Session, *, church_id, reference: str, actor=None, reason: str | None = None) -> TierChangeHistory:
    history = history_for_reference(db, reference)
    if history is None or str(history.church_id) != str(church_id):
        raise PaymentNotFound(f"No tier change recorded for {reference}", reference=reference)
    if history.outcome != "PENDING":
        raise InvalidStateTransition(f"Tier change {reference} is already {history.outcome}", reference=reference)
    if not payment_ledger.mark_failed(db, reference=reference, reason=reason or "Rolled back"):
        raise InvalidStateTransition(f"Payment {reference} has already settled", reference=reference)
    _close_pending(db, history, outcome="ROLLED_BACK", reason=reason)
    audit(db, actor, "tier_change", history.id, "rolled_back", {"reference": reference, "reason": reason}, church_id=history.church_id)
    return history
