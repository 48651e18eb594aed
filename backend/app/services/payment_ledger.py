from __future__ import annotations

import uuid
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import get_logger
from app.core.security import now_utc
from app.models.payment import PaymentIntent
from app.services.proration import to_money

logger = get_logger(__name__)

# Reference prefix -> intent type. The prefix is the only dispatch key the
# gateway echoes back, so these strings must never change.
REFERENCE_PREFIXES = {
    "TIER_UPGRADE": "TIER_UPGRADE",
    "RENEWAL": "RENEWAL",
    "ADDON": "ADDON",
    "SUB": "SUBSCRIPTION",
}
SMS_CREDITS = "SMS_CREDITS"
_PREFIX_BY_TYPE = {v: k for k, v in REFERENCE_PREFIXES.items()}


def intent_type_for_reference(reference: str) -> str:
    ref = (reference or "").strip()
    for prefix, intent_type in REFERENCE_PREFIXES.items():
        if ref.startswith(f"{prefix}-"):
            return intent_type
    return SMS_CREDITS


def new_reference(intent_type: str) -> str:
    opaque = uuid.uuid4().hex
    if intent_type == SMS_CREDITS:
        return opaque
    prefix = _PREFIX_BY_TYPE.get(intent_type)
    if prefix is None:
        raise ValueError(f"Unknown intent type: {intent_type}")
    return f"{prefix}-{opaque}"


def create_intent(
    db: Session,
    *,
    church_id,
    intent_type: str,
    amount: Decimal,
    description: str | None = None,
    metadata: dict | None = None,
    reference: str | None = None,
) -> PaymentIntent:
    ref = reference or new_reference(intent_type)
    if intent_type_for_reference(ref) != intent_type:
        raise ValueError(f"Reference {ref} does not encode intent type {intent_type}")

    intent = PaymentIntent(
        reference=ref,
        church_id=church_id,
        intent_type=intent_type,
        amount=to_money(amount),
        currency=settings.BILLING_CURRENCY,
        status="PENDING",
        description=description,
        meta=dict(metadata or {}),
    )
    db.add(intent)
    db.flush()
    logger.info(
        "payment_intent.created",
        church_id=str(church_id) if church_id else None,
        reference=ref,
        intent_type=intent_type,
        amount=str(intent.amount),
    )
    return intent


def get_intent(db: Session, reference: str) -> PaymentIntent | None:
    return db.execute(
        sa.select(PaymentIntent).where(PaymentIntent.reference == reference)
    ).scalar_one_or_none()


def mark_succeeded(db: Session, *, reference: str, gateway_transaction_id: str | None = None) -> bool:
    """Flip PENDING -> SUCCESS. Returns False when another delivery got there first."""
    now = now_utc()
    result = db.execute(
        sa.update(PaymentIntent)
        .where(PaymentIntent.reference == reference, PaymentIntent.status == "PENDING")
        .values(status="SUCCESS", paid_at=now, gateway_transaction_id=gateway_transaction_id, updated_at=now)
    )
    flipped = result.rowcount == 1
    logger.info("payment_intent.succeeded" if flipped else "payment_intent.already_settled", reference=reference)
    return flipped


def mark_failed(db: Session, *, reference: str, reason: str | None) -> bool:
    now = now_utc()
    result = db.execute(
        sa.update(PaymentIntent)
        .where(PaymentIntent.reference == reference, PaymentIntent.status == "PENDING")
        .values(status="FAILED", failure_reason=(reason or "")[:1000] or None, updated_at=now)
    )
    flipped = result.rowcount == 1
    logger.info("payment_intent.failed" if flipped else "payment_intent.already_settled", reference=reference)
    return flipped
