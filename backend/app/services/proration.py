"""Mid-cycle proration arithmetic.

Periods are half-open: ``[period_start, period_end)``. For a subscription this is
``[current_period_start, next_billing_date)``, so a 30-day cycle starting on the 1st
ends (exclusively) on the 31st and a switch on day 10 leaves 20 days.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from app.core.errors import InvalidProrationWindow
from app.models.subscription import BILLING_INTERVAL_MONTHS

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_billing_after(start: date, interval: str) -> date:
    return add_months(start, BILLING_INTERVAL_MONTHS[interval])


@dataclass(frozen=True)
class ProrationResult:
    unused_credit: Decimal
    new_charge: Decimal
    net_amount: Decimal
    days_remaining: int
    total_days: int

    @property
    def requires_payment(self) -> bool:
        return self.net_amount > 0


def prorate(
    old_price: Decimal,
    new_price: Decimal,
    period_start: date,
    period_end: date,
    effective_date: date,
) -> ProrationResult:
    total_days = (period_end - period_start).days
    if total_days <= 0:
        raise InvalidProrationWindow(
            f"Billing period {period_start}..{period_end} has no days",
            period_start=period_start,
            period_end=period_end,
        )
    if effective_date < period_start or effective_date > period_end:
        raise InvalidProrationWindow(
            f"Effective date {effective_date} is outside {period_start}..{period_end}",
            effective_date=effective_date,
        )

    days_remaining = max(0, min(total_days, (period_end - effective_date).days))
    unused_credit = to_money(Decimal(old_price) * days_remaining / total_days)
    new_charge = to_money(Decimal(new_price) * days_remaining / total_days)
    return ProrationResult(
        unused_credit=unused_credit,
        new_charge=new_charge,
        net_amount=new_charge - unused_credit,
        days_remaining=days_remaining,
        total_days=total_days,
    )


@dataclass(frozen=True)
class TierChangeQuote:
    change_type: str
    old_price: Decimal
    new_price: Decimal
    proration: ProrationResult
    new_period_start: date
    new_next_billing_date: date

    @property
    def net_amount(self) -> Decimal:
        return self.proration.net_amount

    @property
    def applies_immediately(self) -> bool:
        return self.proration.net_amount <= 0


def quote_tier_change(
    *,
    old_price: Decimal,
    new_price: Decimal,
    old_interval: str,
    new_interval: str,
    tier_changed: bool,
    period_start: date,
    period_end: date,
    effective_date: date,
) -> TierChangeQuote:
    """Price a tier and/or interval switch.

    A tier-only switch prorates both prices over the days left and keeps the
    billing date. An interval switch credits what is left of the old plan, charges
    the full price of the new interval and restarts the cycle on ``effective_date``.
    """
    interval_changed = old_interval != new_interval
    if not tier_changed and not interval_changed:
        raise ValueError("Tier change must alter the tier or the billing interval")

    if not interval_changed:
        result = prorate(old_price, new_price, period_start, period_end, effective_date)
        change_type = "TIER_UPGRADE" if result.net_amount > 0 else "TIER_DOWNGRADE"
        return TierChangeQuote(
            change_type=change_type,
            old_price=to_money(old_price),
            new_price=to_money(new_price),
            proration=result,
            new_period_start=period_start,
            new_next_billing_date=period_end,
        )

    credit = prorate(old_price, old_price, period_start, period_end, effective_date)
    new_charge = to_money(new_price)
    result = ProrationResult(
        unused_credit=credit.unused_credit,
        new_charge=new_charge,
        net_amount=new_charge - credit.unused_credit,
        days_remaining=credit.days_remaining,
        total_days=credit.total_days,
    )
    return TierChangeQuote(
        change_type="COMBINED" if tier_changed else "INTERVAL_CHANGE",
        old_price=to_money(old_price),
        new_price=new_charge,
        proration=result,
        new_period_start=effective_date,
        new_next_billing_date=next_billing_after(effective_date, new_interval),
    )
