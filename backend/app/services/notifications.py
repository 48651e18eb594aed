"""Outbound notifications.

Delivery is fire-and-forget: callers invoke ``notify_safely`` after their
transaction has committed, and a failing channel is logged and dropped.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Callable, Protocol

from app.core.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_deletion_warning(self, *, church_id: str, email: str | None, deletion_date: date, days_remaining: int) -> None:
        ...

    def send_renewal_confirmation(self, *, church_id: str, email: str | None, amount: Decimal, next_billing_date: date) -> None:
        ...

    def send_payment_failed(self, *, church_id: str, email: str | None, reason: str | None) -> None:
        ...

    def send_suspension_notice(self, *, church_id: str, email: str | None, data_retention_end_date: date) -> None:
        ...


class LoggingNotifier:
    def send_deletion_warning(self, *, church_id: str, email: str | None, deletion_date: date, days_remaining: int) -> None:
        logger.info(
            "notification.deletion_warning",
            church_id=church_id,
            email=email,
            deletion_date=deletion_date.isoformat(),
            days_remaining=days_remaining,
        )

    def send_renewal_confirmation(self, *, church_id: str, email: str | None, amount: Decimal, next_billing_date: date) -> None:
        logger.info(
            "notification.renewal_confirmation",
            church_id=church_id,
            email=email,
            amount=str(amount),
            next_billing_date=next_billing_date.isoformat(),
        )

    def send_payment_failed(self, *, church_id: str, email: str | None, reason: str | None) -> None:
        logger.info("notification.payment_failed", church_id=church_id, email=email, reason=reason)

    def send_suspension_notice(self, *, church_id: str, email: str | None, data_retention_end_date: date) -> None:
        logger.info(
            "notification.suspension_notice",
            church_id=church_id,
            email=email,
            data_retention_end_date=data_retention_end_date.isoformat(),
        )


def get_notifier() -> Notifier:
    return LoggingNotifier()


def notify_safely(send: Callable[..., None], **kwargs) -> bool:
    try:
        send(**kwargs)
        return True
    except Exception:
        logger.exception("notification.failed", channel=getattr(send, "__name__", "unknown"), church_id=kwargs.get("church_id"))
        return False
