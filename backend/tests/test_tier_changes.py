from datetime import date
from decimal import Decimal

import pytest
import sqlalchemy as sa

from app.core.errors import IneligibleForUpgrade, InvalidStateTransition, PendingTierChangeExists
from app.models.payment import PaymentIntent
from app.services.job_execution import run_job
from app.services.tier_changes import initiate_tier_change, preview_tier_change, rollback_tier_change
from app.services.webhook_reconciler import handle_webhook
from tests.testkit import charge_event, make_church, make_subscription, make_tier, signed

SWITCH_DAY = date(2026, 1, 11)
# 30-day half-open period, 2026-01-01 .. 2026-01-31
PERIOD = {"next_billing_date": date(2026, 1, 31), "current_period_end": date(2026, 1, 30)}


@pytest.fixture()
def setup(db):
    church = make_church(db, member_count=50)
    basic = make_tier(db, "BASIC", monthly="10.00", max_members=100)
    plus = make_tier(db, "PLUS", monthly="30.00", max_members=500)
    small = make_tier(db, "SMALL", monthly="5.00", max_members=20)
    return church, basic, plus, small


def _intent_count(db) -> int:
    return db.execute(sa.select(sa.func.count()).select_from(PaymentIntent)).scalar_one()


def test_preview_matches_proration(db, setup):
    church, basic, plus, _ = setup
    make_subscription(db, church, basic, **PERIOD)
    quote = preview_tier_change(db, church_id=church.id, new_tier_code="plus", today=SWITCH_DAY)
    assert quote.change_type == "TIER_UPGRADE"
    assert quote.proration.unused_credit == Decimal("6.67")
    assert quote.proration.new_charge == Decimal("20.00")
    assert quote.net_amount == Decimal("13.33")


def test_downgrade_applies_immediately_without_payment(db, setup):
    church, basic, plus, _ = setup
    sub = make_subscription(db, church, plus, **PERIOD)

    history, intent = initiate_tier_change(db, church_id=church.id, new_tier_code="BASIC", today=SWITCH_DAY)

    assert intent is None
    assert _intent_count(db) == 0
    assert history.outcome == "COMPLETED"
    assert history.change_type == "TIER_DOWNGRADE"
    assert history.net_amount == Decimal("-13.33")
    assert sub.pricing_tier_id == basic.id
    assert sub.next_billing_date == date(2026, 1, 31)
    assert sub.pending_tier_change_id is None


def test_upgrade_waits_for_payment_and_completes_on_webhook(db, setup):
    church, basic, plus, _ = setup
    sub = make_subscription(db, church, basic, **PERIOD)

    history, intent = initiate_tier_change(db, church_id=church.id, new_tier_code="PLUS", today=SWITCH_DAY)
    db.commit()

    assert intent.reference.startswith("TIER_UPGRADE-")
    assert intent.amount == Decimal("13.33")
    assert history.outcome == "PENDING"
    assert sub.pricing_tier_id == basic.id
    assert sub.pending_tier_change_id == history.id

    raw, sig = signed(charge_event(intent.reference))
    out = handle_webhook(db, gateway="paystack", raw_payload=raw, signature=sig, today=SWITCH_DAY)

    assert out["status"] == "processed"
    db.refresh(sub)
    db.refresh(history)
    assert sub.pricing_tier_id == plus.id
    assert sub.pending_tier_change_id is None
    assert sub.next_billing_date == date(2026, 1, 31)
    assert history.outcome == "COMPLETED"


def test_second_change_while_one_awaits_payment_is_rejected(db, setup):
    church, basic, plus, _ = setup
    make_subscription(db, church, basic, **PERIOD)
    initiate_tier_change(db, church_id=church.id, new_tier_code="PLUS", today=SWITCH_DAY)

    with pytest.raises(PendingTierChangeExists):
        initiate_tier_change(db, church_id=church.id, new_tier_code="PLUS", new_interval="ANNUAL", today=SWITCH_DAY)


def test_rollback_releases_pending_change_and_late_payment_is_ignored(db, setup):
    church, basic, plus, _ = setup
    sub = make_subscription(db, church, basic, **PERIOD)
    history, intent = initiate_tier_change(db, church_id=church.id, new_tier_code="PLUS", today=SWITCH_DAY)

    rollback_tier_change(db, church_id=church.id, reference=intent.reference, actor="owner-1", reason="changed mind")
    db.commit()

    db.refresh(intent)
    assert history.outcome == "ROLLED_BACK"
    assert intent.status == "FAILED"
    assert sub.pending_tier_change_id is None

    raw, sig = signed(charge_event(intent.reference))
    out = handle_webhook(db, gateway="paystack", raw_payload=raw, signature=sig, today=SWITCH_DAY)
    assert out["status"] == "duplicate"
    db.refresh(sub)
    assert sub.pricing_tier_id == basic.id


def test_tier_outside_member_range_is_ineligible(db, setup):
    church, basic, _, small = setup
    make_subscription(db, church, basic, **PERIOD)
    with pytest.raises(IneligibleForUpgrade):
        preview_tier_change(db, church_id=church.id, new_tier_code="SMALL", today=SWITCH_DAY)


def test_trialing_subscription_cannot_change_tier(db, setup):
    church, basic, _, _ = setup
    make_subscription(db, church, basic, status="TRIALING")
    with pytest.raises(InvalidStateTransition):
        initiate_tier_change(db, church_id=church.id, new_tier_code="PLUS", today=SWITCH_DAY)


def test_upgrade_paid_after_renewal_keeps_the_renewed_cycle(db, setup, gateway, notifier):
    church, basic, plus, _ = setup
    sub = make_subscription(db, church, basic, payment_authorization_code="AUTH_ok", **PERIOD)
    history, intent = initiate_tier_change(db, church_id=church.id, new_tier_code="PLUS", today=SWITCH_DAY)
    db.commit()

    run_job(db, "process_subscription_renewals", today=date(2026, 1, 31), gateway=gateway, notifier=notifier)
    db.refresh(sub)
    assert sub.current_period_start == date(2026, 1, 31)
    assert sub.next_billing_date == date(2026, 2, 28)

    raw, sig = signed(charge_event(intent.reference))
    out = handle_webhook(db, gateway="paystack", raw_payload=raw, signature=sig, notifier=notifier, today=date(2026, 2, 3))

    assert out["status"] == "processed"
    db.refresh(sub)
    db.refresh(history)
    assert sub.pricing_tier_id == plus.id
    assert sub.current_period_start == date(2026, 1, 31)
    assert sub.next_billing_date == date(2026, 2, 28)
    assert sub.current_period_end == date(2026, 2, 27)
    assert history.new_next_billing_date == date(2026, 2, 28)

    again = run_job(db, "process_subscription_renewals", today=date(2026, 2, 3), gateway=gateway, notifier=notifier)
    assert again.items_processed == 0
    assert [r.amount for r in gateway.requests] == [Decimal("10.00")]
