from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import create_access_token
from app.models.church import Church
from app.models.subscription import ChurchSubscription, PricingTier
from app.services.payment_gateway import ChargeRequest, ChargeResult, compute_signature
from app.services.proration import next_billing_after


def make_church(db: Session, *, name: str = "Grace Chapel", member_count: int = 50, email: str | None = "office@grace.test") -> Church:
    church = Church(name=name, member_count=member_count, email=email)
    db.add(church)
    db.flush()
    return church


def make_tier(
    db: Session,
    code: str,
    *,
    monthly: str,
    min_members: int = 0,
    max_members: int | None = None,
    is_free: bool = False,
) -> PricingTier:
    price = Decimal(monthly)
    tier = PricingTier(
        code=code,
        name=code.title(),
        min_members=min_members,
        max_members=max_members,
        monthly_price=price,
        quarterly_price=price * 3,
        biannual_price=price * 6,
        annual_price=price * 10,
        is_free=is_free,
    )
    db.add(tier)
    db.flush()
    return tier


def make_subscription(
    db: Session,
    church: Church,
    tier: PricingTier,
    *,
    status: str = "ACTIVE",
    period_start: date = date(2026, 1, 1),
    billing_interval: str = "MONTHLY",
    **fields,
) -> ChurchSubscription:
    next_billing = next_billing_after(period_start, billing_interval)
    values = {
        "church_id": church.id,
        "status": status,
        "pricing_tier_id": tier.id,
        "billing_interval": billing_interval,
        "current_period_start": period_start,
        "current_period_end": date.fromordinal(next_billing.toordinal() - 1),
        "next_billing_date": next_billing,
        "payment_email": church.email,
    }
    values.update(fields)
    sub = ChurchSubscription(**values)
    db.add(sub)
    db.flush()
    return sub


def charge_event(reference: str, *, event: str = "charge.success", **data) -> dict:
    body = {"reference": reference, "id": 4099260516, "status": "success", **data}
    return {"event": event, "data": body}


def signed(payload: dict, *, secret: str | None = None) -> tuple[bytes, str]:
    raw = json.dumps(payload).encode("utf-8")
    return raw, compute_signature(raw, secret or settings.PAYSTACK_SECRET_KEY)


def token_for(user_id: str = "user-1", *, church_id=None, capabilities: list[str] | None = None) -> str:
    return create_access_token(
        user_id,
        church_id=(str(church_id) if church_id is not None else None),
        capabilities=capabilities or [],
    )


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@dataclass
class RecordingNotifier:
    sent: list[tuple[str, dict]] = field(default_factory=list)

    def _record(self, kind: str, **kwargs):
        self.sent.append((kind, kwargs))

    def send_deletion_warning(self, **kwargs):
        self._record("deletion_warning", **kwargs)

    def send_renewal_confirmation(self, **kwargs):
        self._record("renewal_confirmation", **kwargs)

    def send_payment_failed(self, **kwargs):
        self._record("payment_failed", **kwargs)

    def send_suspension_notice(self, **kwargs):
        self._record("suspension_notice", **kwargs)

    def of(self, kind: str) -> list[dict]:
        return [kwargs for k, kwargs in self.sent if k == kind]


@dataclass
class FakeGateway:
    gateway_code: str = "fake"
    decline: bool = False
    explode_for: set[str] = field(default_factory=set)
    requests: list[ChargeRequest] = field(default_factory=list)

    def charge_authorization(self, request: ChargeRequest) -> ChargeResult:
        self.requests.append(request)
        if request.email in self.explode_for:
            raise RuntimeError("gateway timeout")
        if self.decline:
            return ChargeResult(success=False, message="Insufficient funds")
        return ChargeResult(success=True, gateway_transaction_id=f"txn_{len(self.requests)}")
