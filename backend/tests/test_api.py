from datetime import timedelta

import sqlalchemy as sa
from fastapi.testclient import TestClient

from app.core.permissions import BILLING_MANAGE, BILLING_VIEW, PLATFORM_MANAGE_CHURCHES, PLATFORM_MANAGE_JOBS
from app.core.security import today_utc
from app.models.payment import PaymentIntent
from app.services import webhook_reconciler
from app.services.billing import initiate_subscription_payment
from app.services.scheduled_jobs import JOB_REGISTRY
from tests.testkit import auth, charge_event, make_church, make_subscription, make_tier, signed, token_for


def _church_with_subscription(db, **fields):
    church = make_church(db)
    tier = make_tier(db, "PLUS", monthly="30.00")
    make_tier(db, "BASIC", monthly="10.00")
    sub = make_subscription(db, church, tier, period_start=today_utc() - timedelta(days=10), **fields)
    db.commit()
    return church, sub


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_webhook_with_bad_signature_is_401(client):
    raw, _ = signed(charge_event("SUB-abc"))
    r = client.post("/webhooks/paystack/events", content=raw, headers={"X-Paystack-Signature": "0" * 128})
    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_SIGNATURE"


def test_webhook_with_non_ascii_signature_is_401(client):
    raw, _ = signed(charge_event("SUB-abc"))
    r = client.post("/webhooks/paystack/events", content=raw, headers={"X-Signature": "caf\xe9".encode("latin-1")})
    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_SIGNATURE"


def test_webhook_processing_error_is_500_and_leaves_intent_pending(client, db, monkeypatch):
    church, _ = _church_with_subscription(db, status="TRIALING")
    intent = initiate_subscription_payment(db, church_id=church.id)
    db.commit()

    def explode(*args, **kwargs):
        raise RuntimeError("state store unavailable")

    monkeypatch.setattr(webhook_reconciler, "activate_from_payment", explode)
    raw, sig = signed(charge_event(intent.reference))
    r = TestClient(client.app, raise_server_exceptions=False).post(
        "/webhooks/paystack/events", content=raw, headers={"X-Signature": sig}
    )

    assert r.status_code == 500
    db.refresh(intent)
    assert intent.status == "PENDING"


def test_webhook_for_unknown_reference_is_acknowledged(client):
    raw, sig = signed(charge_event("SUB-abc"))
    r = client.post("/webhooks/paystack/events", content=raw, headers={"X-Signature": sig})
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"


def test_subscription_payment_flow_over_http(client, db):
    church, sub = _church_with_subscription(db, status="TRIALING")
    token = token_for(church_id=church.id, capabilities=[BILLING_MANAGE])

    r = client.post("/billing/subscription/payments", json={"email": "treasurer@grace.test"}, headers=auth(token))
    assert r.status_code == 200
    reference = r.json()["reference"]
    assert reference.startswith("SUB-")

    raw, sig = signed(charge_event(reference))
    for expected in ("processed", "duplicate"):
        r = client.post("/webhooks/paystack/events", content=raw, headers={"X-Paystack-Signature": sig})
        assert r.status_code == 200
        assert r.json()["status"] == expected

    r = client.get("/billing/subscription", headers=auth(token))
    assert r.status_code == 200
    assert r.json()["status"] == "ACTIVE"
    assert r.json()["has_access"] is True


def test_invalid_token_is_401(client):
    r = client.get("/billing/subscription", headers=auth("not-a-jwt"))
    assert r.status_code == 401


def test_missing_capability_is_403(client, db):
    church, _ = _church_with_subscription(db)
    token = token_for(church_id=church.id, capabilities=[BILLING_VIEW])
    r = client.post("/billing/subscription/cancel", json={"reason": "x"}, headers=auth(token))
    assert r.status_code == 403
    assert r.json()["code"] == "PERMISSION_DENIED"


def test_church_operation_needs_church_scoped_token(client):
    token = token_for(capabilities=[BILLING_VIEW])
    r = client.get("/billing/subscription", headers=auth(token))
    assert r.status_code == 403


def test_downgrade_preview_and_apply_over_http(client, db):
    church, sub = _church_with_subscription(db)
    token = token_for(church_id=church.id, capabilities=[BILLING_MANAGE])

    r = client.post("/billing/tier-changes/preview", json={"new_tier_code": "BASIC"}, headers=auth(token))
    assert r.status_code == 200
    assert r.json()["change_type"] == "TIER_DOWNGRADE"
    assert r.json()["applies_immediately"] is True

    r = client.post("/billing/tier-changes", json={"new_tier_code": "BASIC"}, headers=auth(token))
    assert r.status_code == 200
    assert r.json()["payment"] is None
    assert r.json()["tier_change"]["outcome"] == "COMPLETED"
    assert db.execute(sa.select(sa.func.count()).select_from(PaymentIntent)).scalar_one() == 0


def test_trigger_job_runs_inline_and_second_trigger_conflicts(client, db):
    token = token_for(capabilities=[PLATFORM_MANAGE_JOBS])

    r = client.get("/platform/jobs", headers=auth(token))
    assert r.status_code == 200
    assert {j["name"] for j in r.json()} == set(JOB_REGISTRY)

    r = client.post("/platform/jobs/delete_expired_church_data/trigger", headers=auth(token))
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "SUCCESS"
    assert body["manually_triggered"] is True
    assert body["triggered_by"] == "user-1"

    r = client.get(f"/platform/jobs/executions/{body['id']}", headers=auth(token))
    assert r.status_code == 200
    assert r.json()["stack_trace"] is None

    r = client.post("/platform/jobs/nope/trigger", headers=auth(token))
    assert r.status_code == 404
    assert r.json()["code"] == "JOB_NOT_FOUND"


def test_retention_endpoints(client, db):
    church, sub = _church_with_subscription(db, status="SUSPENDED", data_retention_end_date=today_utc() + timedelta(days=5))
    token = token_for(capabilities=[PLATFORM_MANAGE_CHURCHES])

    r = client.get("/platform/data-retention/pending", headers=auth(token))
    assert r.status_code == 200
    assert [row["urgency"] for row in r.json()] == ["HIGH"]

    r = client.post(f"/platform/data-retention/{church.id}/extend", json={"extension_days": 14}, headers=auth(token))
    assert r.status_code == 200
    assert r.json()["retention_extension_days"] == 14

    r = client.delete(f"/platform/data-retention/{church.id}/cancel-deletion", headers=auth(token))
    assert r.status_code == 200
    assert r.json()["status"] == "SUSPENDED"
    assert r.json()["deletion_canceled"] is True
