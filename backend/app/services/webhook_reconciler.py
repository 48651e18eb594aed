"""Inbound payment-gateway webhooks.

``handle_webhook`` verifies the signature, routes ``charge.success`` by the
reference prefix and applies the side effect in the same transaction as the
PENDING -> SUCCESS compare-and-set on the intent. Replays find the intent
already settled and are acknowledged as ``duplicate``. Conditions the gateway
cannot fix by retrying (unknown reference, missing metadata) are acknowledged
as ``ignored``; anything else rolls back and propagates so the gateway retries.

This function owns its transaction: it commits before notifications go out.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from app.core.errors import InvalidSignature, MissingMetadata, SubscriptionNotFound, UnrecognizedReference
from app.core.logging import get_logger
from app.core.security import today_utc
from app.models.payment import PaymentIntent, PaymentWebhookEvent
from app.services import billing, payment_ledger
from app.services.notifications import Notifier, get_notifier, notify_safely
from app.services.payment_gateway import verify_webhook_signature
from app.services.subscription_state import activate_from_payment, get_subscription
from app.services.tier_changes import complete_tier_change, fail_tier_change, history_for_reference

logger = get_logger(__name__)

HANDLED_EVENTS = ("charge.success", "charge.failed")


@dataclass
class _Outcome:
    status: str
    detail: str | None = None
    church_id: object | None = None
    followups: list[Callable[[], None]] = field(default_factory=list)


def _data(payload: dict) -> dict:
    data = payload.get("data")
    return data if isinstance(data, dict) else {}


def _metadata(intent: PaymentIntent | None, data: dict) -> dict:
    sent = data.get("metadata")
    if isinstance(sent, str):
        try:
            sent = json.loads(sent)
        except ValueError:
            sent = None
    merged = dict(sent) if isinstance(sent, dict) else {}
    if intent is not None:
        merged.update(intent.meta or {})
    return merged


def _reusable_authorization(data: dict) -> str | None:
    auth = data.get("authorization")
    if not isinstance(auth, dict) or not auth.get("reusable"):
        return None
    code = auth.get("authorization_code")
    return str(code) if code else None


def _customer_email(data: dict, metadata: dict) -> str | None:
    customer = data.get("customer")
    if isinstance(customer, dict) and customer.get("email"):
        return str(customer["email"])
    return metadata.get("email")


def _require_intent(db: Session, reference: str) -> PaymentIntent:
    intent = payment_ledger.get_intent(db, reference)
    if intent is None:
        raise UnrecognizedReference(f"No payment intent for reference {reference}", reference=reference)
    return intent


def _settle(db: Session, intent: PaymentIntent, data: dict) -> bool:
    if intent.status != "PENDING":
        return False
    gateway_txn = data.get("id")
    return payment_ledger.mark_succeeded(
        db,
        reference=intent.reference,
        gateway_transaction_id=(str(gateway_txn) if gateway_txn is not None else None),
    )


def _duplicate(intent: PaymentIntent) -> _Outcome:
    return _Outcome(status="duplicate", detail=f"Intent already {intent.status}", church_id=intent.church_id)


def _on_subscription(db: Session, reference: str, data: dict, today: date, notifier: Notifier) -> _Outcome:
    intent = _require_intent(db, reference)
    metadata = _metadata(intent, data)
    church_id = billing.metadata_church_id(intent, metadata)
    if church_id is None:
        raise MissingMetadata(f"Subscription payment {reference} has no church_id", reference=reference)
    if not _settle(db, intent, data):
        return _duplicate(intent)

    sub, changed = activate_from_payment(
        db,
        church_id=church_id,
        pricing_tier_id=metadata.get("pricing_tier_id"),
        billing_interval=metadata.get("billing_interval"),
        authorization_code=_reusable_authorization(data),
        email=_customer_email(data, metadata),
        today=today,
        reference=reference,
    )
    out = _Outcome(status="processed", church_id=church_id)
    if changed:
        out.detail = "Subscription activated"
        email, next_billing, amount = sub.payment_email, sub.next_billing_date, Decimal(intent.amount)
        out.followups.append(
            lambda: notify_safely(
                notifier.send_renewal_confirmation,
                church_id=str(church_id),
                email=email,
                amount=amount,
                next_billing_date=next_billing,
            )
        )
    else:
        out.detail = f"Payment recorded, subscription left {sub.status}"
    return out


def _on_addon(db: Session, reference: str, data: dict, today: date) -> _Outcome:
    intent = _require_intent(db, reference)
    metadata = _metadata(intent, data)
    if billing.metadata_church_id(intent, metadata) is None or not metadata.get("storage_addon_id"):
        raise MissingMetadata(f"Addon payment {reference} lacks church_id or storage_addon_id", reference=reference)
    if not _settle(db, intent, data):
        return _duplicate(intent)
    row = billing.activate_addon(db, intent=intent, metadata=metadata, today=today)
    return _Outcome(status="processed", detail="Addon activated", church_id=row.church_id)


def _on_renewal(db: Session, reference: str, data: dict) -> _Outcome:
    intent = _require_intent(db, reference)
    if not _settle(db, intent, data):
        return _duplicate(intent)
    return _Outcome(status="processed", detail="Renewal confirmed", church_id=intent.church_id)


def _on_tier_upgrade(db: Session, reference: str, data: dict, today: date) -> _Outcome:
    intent = _require_intent(db, reference)
    if history_for_reference(db, reference) is None:
        raise MissingMetadata(f"No tier change recorded for {reference}", reference=reference)
    if not _settle(db, intent, data):
        return _duplicate(intent)
    history = complete_tier_change(db, reference=reference, today=today)
    detail = "Tier change completed" if history is not None else "Tier change was already closed"
    return _Outcome(status="processed", detail=detail, church_id=intent.church_id)


def _on_sms_credits(db: Session, reference: str, data: dict) -> _Outcome:
    intent = _require_intent(db, reference)
    church_id, credit_amount = billing.sms_credit_request(intent, _metadata(intent, data))
    if not _settle(db, intent, data):
        return _duplicate(intent)
    billing.apply_sms_credits(
        db,
        church_id=church_id,
        credit_amount=credit_amount,
        reference=reference,
        amount_paid=intent.amount,
    )
    return _Outcome(status="processed", detail="SMS credits applied", church_id=church_id)


def _on_charge_success(db: Session, reference: str, data: dict, today: date, notifier: Notifier) -> _Outcome:
    intent_type = payment_ledger.intent_type_for_reference(reference)
    if intent_type == "SUBSCRIPTION":
        return _on_subscription(db, reference, data, today, notifier)
    if intent_type == "ADDON":
        return _on_addon(db, reference, data, today)
    if intent_type == "RENEWAL":
        return _on_renewal(db, reference, data)
    if intent_type == "TIER_UPGRADE":
        return _on_tier_upgrade(db, reference, data, today)
    return _on_sms_credits(db, reference, data)


def _on_charge_failed(db: Session, reference: str, data: dict, notifier: Notifier) -> _Outcome:
    intent = payment_ledger.get_intent(db, reference)
    if intent is None:
        raise UnrecognizedReference(f"No payment intent for reference {reference}", reference=reference)
    reason = data.get("gateway_response") or data.get("message") or "Charge failed"
    if not payment_ledger.mark_failed(db, reference=reference, reason=str(reason)):
        return _duplicate(intent)
    if intent.intent_type == "TIER_UPGRADE":
        fail_tier_change(db, reference=reference, reason=str(reason))

    out = _Outcome(status="recorded", detail=str(reason), church_id=intent.church_id)
    if intent.church_id is not None:
        church_id = intent.church_id
        try:
            email = get_subscription(db, church_id).payment_email
        except SubscriptionNotFound:
            email = None
        out.followups.append(
            lambda: notify_safely(notifier.send_payment_failed, church_id=str(church_id), email=email, reason=str(reason))
        )
    return out


def _record(db: Session, *, gateway: str, event_type: str, reference: str | None, outcome: _Outcome, payload: dict):
    db.add(
        PaymentWebhookEvent(
            gateway=gateway,
            event_type=event_type or "unknown",
            reference=reference,
            church_id=outcome.church_id,
            outcome=outcome.status,
            detail=(outcome.detail or "")[:1000] or None,
            payload=payload,
        )
    )


def handle_webhook(
    db: Session,
    *,
    gateway: str,
    raw_payload: bytes,
    signature: str | None,
    notifier: Notifier | None = None,
    today: date | None = None,
) -> dict:
    gateway = (gateway or "").strip().lower()
    if not verify_webhook_signature(gateway, raw_payload, signature):
        logger.warning("webhook.invalid_signature", gateway=gateway, has_signature=bool(signature))
        raise InvalidSignature("Invalid webhook signature", gateway=gateway)

    notifier = notifier or get_notifier()
    today = today or today_utc()
    try:
        payload = json.loads(raw_payload or b"{}")
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}
        event_type, reference = "invalid", None
        outcome = _Outcome(status="ignored", detail="Payload is not a JSON object")
    else:
        event_type = str(payload.get("event") or "")
        data = _data(payload)
        reference = str(data["reference"]).strip() if data.get("reference") else None
        if event_type not in HANDLED_EVENTS:
            outcome = _Outcome(status="ignored", detail=f"Event {event_type or 'unknown'} is not handled")
        elif not reference:
            outcome = _Outcome(status="ignored", detail="Event has no reference")
        else:
            try:
                if event_type == "charge.success":
                    outcome = _on_charge_success(db, reference, data, today, notifier)
                else:
                    outcome = _on_charge_failed(db, reference, data, notifier)
            except (UnrecognizedReference, MissingMetadata) as exc:
                db.rollback()
                outcome = _Outcome(status="ignored", detail=exc.message)
            except Exception:
                db.rollback()
                logger.exception("webhook.processing_failed", gateway=gateway, event_type=event_type, reference=reference)
                raise

    _record(db, gateway=gateway, event_type=event_type, reference=reference, outcome=outcome, payload=payload)
    db.commit()
    logger.info(
        "webhook.handled",
        gateway=gateway,
        event_type=event_type,
        reference=reference,
        church_id=(str(outcome.church_id) if outcome.church_id else None),
        outcome=outcome.status,
    )

    for send in outcome.followups:
        send()

    return {
        "gateway": gateway,
        "event_type": event_type,
        "reference": reference,
        "status": outcome.status,
        "detail": outcome.detail,
    }
