"""Operation -> capability table and the guard that evaluates it.

Routers never check capabilities inline; they declare the operation they are about
to invoke and ``authorize`` looks up what the caller must hold.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.core.errors import PermissionDenied

PLATFORM_MANAGE_JOBS = "PLATFORM_MANAGE_JOBS"
PLATFORM_VIEW_JOBS = "PLATFORM_VIEW_JOBS"
PLATFORM_MANAGE_CHURCHES = "PLATFORM_MANAGE_CHURCHES"
PLATFORM_MANAGE_BILLING = "PLATFORM_MANAGE_BILLING"
BILLING_VIEW = "BILLING_VIEW"
BILLING_MANAGE = "BILLING_MANAGE"

OPERATION_CAPABILITIES: dict[str, str] = {
    # Scheduled jobs
    "jobs.list": PLATFORM_VIEW_JOBS,
    "jobs.stats": PLATFORM_VIEW_JOBS,
    "jobs.trigger": PLATFORM_MANAGE_JOBS,
    "jobs.retry": PLATFORM_MANAGE_JOBS,
    "jobs.cancel": PLATFORM_MANAGE_JOBS,
    # Data retention
    "retention.list_pending": PLATFORM_MANAGE_CHURCHES,
    "retention.extend": PLATFORM_MANAGE_CHURCHES,
    "retention.cancel_deletion": PLATFORM_MANAGE_CHURCHES,
    # Platform billing administration
    "subscription.reactivate": PLATFORM_MANAGE_BILLING,
    "subscription.stats": PLATFORM_MANAGE_BILLING,
    "subscription.grant_grace_period": PLATFORM_MANAGE_BILLING,
    "subscription.revoke_grace_period": PLATFORM_MANAGE_BILLING,
    "subscription.grant_promotional_credits": PLATFORM_MANAGE_BILLING,
    "subscription.revoke_promotional_credits": PLATFORM_MANAGE_BILLING,
    "partnership_codes.manage": PLATFORM_MANAGE_BILLING,
    # Church billing
    "subscription.view": BILLING_VIEW,
    "subscription.pay": BILLING_MANAGE,
    "subscription.cancel": BILLING_MANAGE,
    "subscription.apply_partnership_code": BILLING_MANAGE,
    "tier_change.preview": BILLING_VIEW,
    "tier_change.initiate": BILLING_MANAGE,
    "tier_change.rollback": BILLING_MANAGE,
    "addons.purchase": BILLING_MANAGE,
    "sms_credits.purchase": BILLING_MANAGE,
}

# Holders of a key implicitly hold every capability in its value.
CAPABILITY_IMPLIES: dict[str, frozenset[str]] = {
    PLATFORM_MANAGE_JOBS: frozenset({PLATFORM_VIEW_JOBS}),
    BILLING_MANAGE: frozenset({BILLING_VIEW}),
}


@dataclass(frozen=True)
class Operator:
    user_id: str
    church_id: str | None = None
    capabilities: frozenset[str] = field(default_factory=frozenset)

    def effective_capabilities(self) -> frozenset[str]:
        out = set(self.capabilities)
        for cap in self.capabilities:
            out.update(CAPABILITY_IMPLIES.get(cap, ()))
        return frozenset(out)


def required_capability(operation: str) -> str:
    try:
        return OPERATION_CAPABILITIES[operation]
    except KeyError:
        raise KeyError(f"Unknown operation: {operation}") from None


def authorize(operator: Operator, operation: str) -> Operator:
    capability = required_capability(operation)
    if capability not in operator.effective_capabilities():
        raise PermissionDenied(
            f"Operation {operation} requires {capability}",
            operation=operation,
            user_id=operator.user_id,
        )
    return operator
