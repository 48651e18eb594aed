from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
import uuid

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import AddonNotFound, InvalidStateTransition, MissingMetadata
from app.core.logging import get_logger
from app.core.security import today_utc
from app.models.addon import ChurchStorageAddon, StorageAddon
from app.models.payment import PaymentIntent
from app.models.sms_credit import ChurchSmsCredit, SmsCreditPurchase
from app.services import payment_ledger
from app.services.proration import to_money
from app.services.subscription_state import (
    Active,
    get_subscription,
    is_in_grace_period,
    lock_subscription,
    state_of,
)
from app.services.tier_changes import get_tier_by_code

logger = get_logger(__name__)


def _parse_uuid(value) -> uuid.UUID | None:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _parse_decimal(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        out = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return out if out.is_finite() else None


def metadata_church_id(intent: PaymentIntent | None, metadata: dict) -> uuid.UUID | None:
    if intent is not None and intent.church_id is not None:
        return intent.church_id
    return _parse_uuid(metadata.get("church_id") or metadata.get("churchId"))


# -- subscription payments (SUB-) --------------------------------------------


def initiate_subscription_payment(
    db: Session,
    *,
    church_id,
    tier_code: str | None = None,
    billing_interval: str | None = None,
    email: str | None = None,
) -> PaymentIntent:
    sub = get_subscription(db, church_id)
    tier = get_tier_by_code(db, tier_code) if tier_code else sub.pricing_tier
    interval = billing_interval or sub.billing_interval
    if sub.status not in ("TRIALING", "PAST_DUE"):
        raise InvalidStateTransition(
            f"Subscription payments are only taken while TRIALING or PAST_DUE, church is {sub.status}",
            church_id=str(sub.church_id),
        )
    amount = tier.price_for_interval(interval)
    return payment_ledger.create_intent(
        db,
        church_id=sub.church_id,
        intent_type="SUBSCRIPTION",
        amount=amount,
        description=f"{tier.name} subscription ({interval})",
        metadata={
            "church_id": str(sub.church_id),
            "pricing_tier_id": str(tier.id),
            "billing_interval": interval,
            "email": email,
        },
    )


# -- storage addons (ADDON-) --------------------------------------------------


def quote_addon_price(monthly_price: Decimal, next_billing_date: date | None, today: date) -> tuple[Decimal, int | None]:
    """Prorate an addon to the base subscription's next billing date.

    Returns ``(amount, prorated_days)``; ``prorated_days`` is None when the full
    monthly price applies.
    """
    if next_billing_date is None or today >= next_billing_date:
        return to_money(monthly_price), None
    days_remaining = (next_billing_date - today).days
    if days_remaining < settings.ADDON_MIN_PRORATION_DAYS:
        return to_money(monthly_price), None
    return to_money(Decimal(monthly_price) * days_remaining / 30), days_remaining


def initiate_addon_purchase(db: Session, *, church_id, storage_addon_id, today: date | None = None) -> PaymentIntent:
    today = today or today_utc()
    sub = get_subscription(db, church_id)
    state = state_of(sub)
    if not isinstance(state, Active) and not is_in_grace_period(state, today):
        raise InvalidStateTransition(
            f"Addons need an active subscription or one in its grace period, church is {sub.status}",
            church_id=str(sub.church_id),
        )
    addon = db.get(StorageAddon, _parse_uuid(storage_addon_id))
    if addon is None or not addon.is_active:
        raise AddonNotFound(f"Storage addon {storage_addon_id} not found")
    already = db.execute(
        sa.select(sa.func.count())
        .select_from(ChurchStorageAddon)
        .where(
            ChurchStorageAddon.church_id == sub.church_id,
            ChurchStorageAddon.storage_addon_id == addon.id,
            ChurchStorageAddon.status == "ACTIVE",
        )
    ).scalar_one()
    if already:
        raise InvalidStateTransition(f"Church already has addon {addon.name}", church_id=str(sub.church_id))

    amount, prorated_days = quote_addon_price(addon.monthly_price, sub.next_billing_date, today)
    return payment_ledger.create_intent(
        db,
        church_id=sub.church_id,
        intent_type="ADDON",
        amount=amount,
        description=f"Storage addon {addon.name} ({addon.storage_gb} GB)",
        metadata={
            "church_id": str(sub.church_id),
            "storage_addon_id": str(addon.id),
            "prorated_days": prorated_days,
            "original_amount": str(to_money(addon.monthly_price)),
        },
    )


def activate_addon(db: Session, *, intent: PaymentIntent, metadata: dict, today: date | None = None) -> ChurchStorageAddon:
    today = today or today_utc()
    church_id = metadata_church_id(intent, metadata)
    addon_id = _parse_uuid(metadata.get("storage_addon_id"))
    if church_id is None or addon_id is None:
        raise MissingMetadata(f"Addon payment {intent.reference} lacks church_id or storage_addon_id", reference=intent.reference)
    addon = db.get(StorageAddon, addon_id)
    if addon is None:
        raise AddonNotFound(f"Storage addon {addon_id} not found")

    sub = lock_subscription(db, church_id)
    row = ChurchStorageAddon(
        church_id=church_id,
        storage_addon_id=addon.id,
        status="ACTIVE",
        purchase_reference=intent.reference,
        purchase_price=to_money(metadata.get("original_amount") or addon.monthly_price),
        amount_paid=to_money(intent.amount),
        prorated_days=metadata.get("prorated_days"),
        current_period_start=today,
        next_renewal_date=sub.next_billing_date,
    )
    db.add(row)
    db.flush()
    logger.info("addon.activated", church_id=str(church_id), addon=addon.code, reference=intent.reference)
    return row


# -- SMS credits (unprefixed references) --------------------------------------


def initiate_sms_credit_purchase(db: Session, *, church_id, amount: Decimal) -> PaymentIntent:
    sub = get_subscription(db, church_id)
    amount = to_money(amount)
    if amount <= 0:
        raise ValueError("SMS credit purchase amount must be positive")
    return payment_ledger.create_intent(
        db,
        church_id=sub.church_id,
        intent_type=payment_ledger.SMS_CREDITS,
        amount=amount,
        description="SMS credits",
        metadata={"church_id": str(sub.church_id), "credit_amount": str(amount)},
    )


def sms_credit_request(intent: PaymentIntent | None, metadata: dict) -> tuple[uuid.UUID, Decimal]:
    church_id = metadata_church_id(intent, metadata)
    credit_amount = _parse_decimal(metadata.get("credit_amount") or metadata.get("creditAmount"))
    if church_id is None or credit_amount is None or credit_amount <= 0:
        raise MissingMetadata("SMS credit payment needs church_id and credit_amount")
    return church_id, to_money(credit_amount)


def apply_sms_credits(db: Session, *, church_id, credit_amount: Decimal, reference: str, amount_paid: Decimal) -> ChurchSmsCredit:
    balance = db.execute(
        sa.select(ChurchSmsCredit).where(ChurchSmsCredit.church_id == church_id).with_for_update()
    ).scalar_one_or_none()
    if balance is None:
        balance = ChurchSmsCredit(church_id=church_id, balance=Decimal("0.00"), total_purchased=Decimal("0.00"))
        db.add(balance)
    balance.balance = to_money(Decimal(balance.balance) + credit_amount)
    balance.total_purchased = to_money(Decimal(balance.total_purchased) + credit_amount)
    db.add(
        SmsCreditPurchase(
            church_id=church_id,
            reference=reference,
            credit_amount=credit_amount,
            amount_paid=to_money(amount_paid),
        )
    )
    db.flush()
    logger.info("sms_credits.applied", church_id=str(church_id), credit_amount=str(credit_amount), reference=reference)
    return balance
