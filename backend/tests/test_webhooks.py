from datetime import date
from decimal import Decimal

import pytest
import sqlalchemy as sa

from app.core.errors import InvalidSignature
from app.models.addon import ChurchStorageAddon, StorageAddon
from app.models.audit_log import AuditLog
from app.models.payment import PaymentWebhookEvent
from app.models.sms_credit import ChurchSmsCredit
from app.services import payment_ledger, webhook_reconciler
from app.services.billing import initiate_sms_credit_purchase, initiate_subscription_payment
from app.services.subscription_state import create_trial_subscription
from app.services.webhook_reconciler import handle_webhook
from tests.testkit import RecordingNotifier, charge_event, make_church, make_subscription, make_tier, signed

PAID_ON = date(2026, 2, 1)


def _deliver(db, payload, notifier, *, today=PAID_ON):
    raw, sig = signed(payload)
    return handle_webhook(db, gateway="paystack", raw_payload=raw, signature=sig, notifier=notifier, today=today)


def _count(db, model, *where) -> int:
    return db.execute(sa.select(sa.func.count()).select_from(model).where(*where)).scalar_one()


def test_bad_signature_is_rejected(db, notifier):
    raw, _ = signed(charge_event("SUB-whatever"))
    with pytest.raises(InvalidSignature):
        handle_webhook(db, gateway="paystack", raw_payload=raw, signature="deadbeef", notifier=notifier)
    with pytest.raises(InvalidSignature):
        handle_webhook(db, gateway="paystack", raw_payload=raw, signature=None, notifier=notifier)


def test_signature_from_another_secret_is_rejected(db, notifier):
    raw, sig = signed(charge_event("SUB-whatever"), secret="someone-else")
    with pytest.raises(InvalidSignature):
        handle_webhook(db, gateway="paystack", raw_payload=raw, signature=sig, notifier=notifier)


def test_subscription_payment_delivered_twice_activates_once(db, notifier):
    church = make_church(db)
    tier = make_tier(db, "PLUS", monthly="30.00")
    sub = create_trial_subscription(db, church_id=church.id, pricing_tier_id=tier.id, today=date(2026, 1, 18))
    intent = initiate_subscription_payment(db, church_id=church.id, email="treasurer@grace.test")
    db.commit()

    payload = charge_event(
        intent.reference,
        customer={"email": "treasurer@grace.test"},
        authorization={"authorization_code": "AUTH_abc", "reusable": True},
    )
    first = _deliver(db, payload, notifier)
    second = _deliver(db, payload, notifier)

    assert first["status"] == "processed"
    assert second["status"] == "duplicate"
    db.refresh(sub)
    db.refresh(intent)
    assert intent.status == "SUCCESS"
    assert sub.status == "ACTIVE"
    assert sub.current_period_start == PAID_ON
    assert sub.next_billing_date == date(2026, 3, 1)
    assert sub.payment_authorization_code == "AUTH_abc"
    assert len(notifier.of("renewal_confirmation")) == 1
    assert _count(db, AuditLog, AuditLog.action == "activated_by_payment") == 1
    outcomes = sorted(db.execute(sa.select(PaymentWebhookEvent.outcome)).scalars())
    assert outcomes == ["duplicate", "processed"]


def test_addon_webhook_retry_activates_addon_once(db, notifier):
    church = make_church(db)
    tier = make_tier(db, "PLUS", monthly="30.00")
    make_subscription(db, church, tier, period_start=date(2026, 1, 20))
    addon = StorageAddon(code="STORAGE_10", name="10 GB", storage_gb=10, monthly_price=Decimal("15.00"))
    db.add(addon)
    db.flush()
    intent = payment_ledger.create_intent(
        db,
        church_id=church.id,
        intent_type="ADDON",
        amount=Decimal("15.00"),
        reference="ADDON-abc123",
        metadata={"church_id": str(church.id), "storage_addon_id": str(addon.id), "prorated_days": None},
    )
    db.commit()

    payload = charge_event("ADDON-abc123")
    first = _deliver(db, payload, notifier)
    db.refresh(intent)
    assert first["status"] == "processed"
    assert intent.status == "SUCCESS"

    second = _deliver(db, payload, notifier)
    assert second["status"] == "duplicate"
    rows = db.execute(sa.select(ChurchStorageAddon)).scalars().all()
    assert len(rows) == 1
    assert rows[0].purchase_reference == "ADDON-abc123"
    assert rows[0].status == "ACTIVE"


def test_addon_payment_without_addon_id_is_acknowledged_and_left_pending(db, notifier):
    church = make_church(db)
    intent = payment_ledger.create_intent(
        db,
        church_id=church.id,
        intent_type="ADDON",
        amount=Decimal("15.00"),
        metadata={"church_id": str(church.id)},
    )
    db.commit()

    out = _deliver(db, charge_event(intent.reference), notifier)

    assert out["status"] == "ignored"
    db.refresh(intent)
    assert intent.status == "PENDING"
    assert _count(db, ChurchStorageAddon) == 0


def test_unknown_reference_is_acknowledged(db, notifier):
    out = _deliver(db, charge_event("SUB-doesnotexist"), notifier)
    assert out["status"] == "ignored"
    assert _count(db, PaymentWebhookEvent, PaymentWebhookEvent.outcome == "ignored") == 1


def test_unprefixed_reference_without_intent_is_ignored(db, notifier):
    out = _deliver(db, charge_event("T1234567890"), notifier)
    assert out["status"] == "ignored"
    assert _count(db, ChurchSmsCredit) == 0


def test_unhandled_event_type_is_ignored(db, notifier):
    out = _deliver(db, charge_event("SUB-x", event="transfer.success"), notifier)
    assert out["status"] == "ignored"
    assert out["event_type"] == "transfer.success"


def test_sms_credit_purchase_credits_balance_once(db, notifier):
    church = make_church(db)
    tier = make_tier(db, "PLUS", monthly="30.00")
    make_subscription(db, church, tier)
    intent = initiate_sms_credit_purchase(db, church_id=church.id, amount=Decimal("50"))
    db.commit()
    assert payment_ledger.intent_type_for_reference(intent.reference) == "SMS_CREDITS"

    first = _deliver(db, charge_event(intent.reference), notifier)
    second = _deliver(db, charge_event(intent.reference), notifier)

    assert (first["status"], second["status"]) == ("processed", "duplicate")
    balance = db.get(ChurchSmsCredit, church.id)
    db.refresh(balance)
    assert balance.balance == Decimal("50.00")


def test_failed_charge_marks_intent_and_notifies(db, notifier):
    church = make_church(db)
    tier = make_tier(db, "PLUS", monthly="30.00")
    make_subscription(db, church, tier, status="TRIALING")
    intent = initiate_subscription_payment(db, church_id=church.id)
    db.commit()

    out = _deliver(db, charge_event(intent.reference, event="charge.failed", gateway_response="Declined"), notifier)

    assert out["status"] == "recorded"
    db.refresh(intent)
    assert intent.status == "FAILED"
    assert intent.failure_reason == "Declined"
    assert notifier.of("payment_failed")[0]["reason"] == "Declined"


def test_payment_on_suspended_subscription_is_recorded_without_reactivation(db, notifier):
    church = make_church(db)
    tier = make_tier(db, "PLUS", monthly="30.00")
    sub = make_subscription(db, church, tier, status="SUSPENDED", data_retention_end_date=date(2026, 3, 1))
    intent = payment_ledger.create_intent(
        db,
        church_id=church.id,
        intent_type="SUBSCRIPTION",
        amount=Decimal("30.00"),
        metadata={"church_id": str(church.id)},
    )
    db.commit()

    out = _deliver(db, charge_event(intent.reference), notifier)

    assert out["status"] == "processed"
    db.refresh(sub)
    assert sub.status == "SUSPENDED"
    assert notifier.of("renewal_confirmation") == []


def test_non_ascii_signature_is_rejected(db, notifier):
    raw, _ = signed(charge_event("SUB-whatever"))
    with pytest.raises(InvalidSignature):
        handle_webhook(db, gateway="paystack", raw_payload=raw, signature="caf\xe9", notifier=notifier)


class BrokenMailer(RecordingNotifier):
    def send_renewal_confirmation(self, **kwargs):
        raise RuntimeError("smtp down")


def _trial_with_payment(db):
    church = make_church(db)
    tier = make_tier(db, "PLUS", monthly="30.00")
    sub = create_trial_subscription(db, church_id=church.id, pricing_tier_id=tier.id, today=date(2026, 1, 18))
    intent = initiate_subscription_payment(db, church_id=church.id, email="treasurer@grace.test")
    db.commit()
    return sub, intent


def test_failing_notification_keeps_the_committed_activation(db):
    sub, intent = _trial_with_payment(db)

    out = _deliver(db, charge_event(intent.reference), BrokenMailer())

    assert out["status"] == "processed"
    db.refresh(sub)
    db.refresh(intent)
    assert sub.status == "ACTIVE"
    assert intent.status == "SUCCESS"


def test_unexpected_error_rolls_back_so_the_gateway_can_retry(db, notifier, monkeypatch):
    sub, intent = _trial_with_payment(db)

    def explode(*args, **kwargs):
        raise RuntimeError("state store unavailable")

    monkeypatch.setattr(webhook_reconciler, "activate_from_payment", explode)
    with pytest.raises(RuntimeError):
        _deliver(db, charge_event(intent.reference), notifier)

    db.refresh(sub)
    db.refresh(intent)
    assert intent.status == "PENDING"
    assert sub.status == "TRIALING"
    assert _count(db, PaymentWebhookEvent, PaymentWebhookEvent.id.is_not(None)) == 0

    monkeypatch.undo()
    assert _deliver(db, charge_event(intent.reference), notifier)["status"] == "processed"
    db.refresh(sub)
    assert sub.status == "ACTIVE"
