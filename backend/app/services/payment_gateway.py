from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import hashlib
import hmac
from typing import Protocol

from app.core.config import settings


@dataclass(frozen=True)
class ChargeRequest:
    authorization_code: str
    email: str | None
    amount: Decimal
    currency: str
    reference: str


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    message: str | None = None
    gateway_transaction_id: str | None = None


class PaymentGateway(Protocol):
    gateway_code: str

    def charge_authorization(self, request: ChargeRequest) -> ChargeResult:
        ...


class UnconfiguredGateway:
    gateway_code = "none"

    def charge_authorization(self, request: ChargeRequest) -> ChargeResult:
        return ChargeResult(success=False, message="No payment gateway client is configured")


def get_gateway() -> PaymentGateway:
    # Outbound charge clients live outside this service; renewals decline until one is wired in.
    return UnconfiguredGateway()


def _webhook_secrets() -> dict[str, str]:
    out: dict[str, str] = {}
    raw = settings.BILLING_WEBHOOK_SECRETS or ""
    for part in raw.split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        gateway, secret = part.split(":", 1)
        if gateway.strip() and secret.strip():
            out[gateway.strip().lower()] = secret.strip()
    return out


def webhook_secret_for(gateway: str) -> str | None:
    code = (gateway or "").strip().lower()
    secret = _webhook_secrets().get(code)
    if secret:
        return secret
    if code == "paystack":
        return settings.PAYSTACK_SECRET_KEY
    return None


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_webhook_signature(gateway: str, raw_body: bytes, signature: str | None) -> bool:
    secret = webhook_secret_for(gateway)
    if not secret or not signature:
        return False
    expected = compute_signature(raw_body, secret).encode("ascii")
    # headers arrive latin-1 decoded; compare bytes so stray non-ASCII reads as a mismatch
    provided = signature.strip().lower().encode("utf-8", "replace")
    return hmac.compare_digest(expected, provided)
