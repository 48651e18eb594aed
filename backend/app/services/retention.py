from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import RetentionNotApplicable
from app.core.logging import get_logger
from app.core.security import now_utc, today_utc
from app.models.church import Church
from app.models.subscription import ChurchSubscription
from app.services.subscription_state import SubscriptionStatus, lock_subscription, record_change

logger = get_logger(__name__)

URGENCY_BANDS = (
    (0, "OVERDUE"),
    (3, "CRITICAL"),
    (7, "HIGH"),
    (14, "MEDIUM"),
)


def compute_urgency(days_until_deletion: int) -> str:
    for upper, label in URGENCY_BANDS:
        if days_until_deletion <= upper:
            return label
    return "LOW"


@dataclass(frozen=True)
class PendingDeletion:
    church_id: str
    church_name: str | None
    suspended_at: datetime | None
    data_retention_end_date: date
    days_until_deletion: int
    days_until_warning: int
    urgency: str
    retention_extension_days: int
    retention_extension_note: str | None
    warning_sent: bool


def _require_suspended(sub: ChurchSubscription, operation: str):
    if sub.status != SubscriptionStatus.SUSPENDED.value:
        raise RetentionNotApplicable(
            f"Cannot {operation}: church {sub.church_id} is {sub.status}, not SUSPENDED",
            church_id=str(sub.church_id),
            status=sub.status,
        )


def extend_retention(
    db: Session,
    *,
    church_id,
    extension_days: int,
    note: str | None,
    actor=None,
    today: date | None = None,
) -> ChurchSubscription:
    if extension_days <= 0:
        raise ValueError("Extension days must be positive")
    today = today or today_utc()
    sub = lock_subscription(db, church_id)
    _require_suspended(sub, "extend retention")

    old_end = sub.data_retention_end_date
    sub.data_retention_end_date = old_end + timedelta(days=extension_days)
    sub.retention_extension_days = int(sub.retention_extension_days or 0) + extension_days
    sub.retention_extension_note = note
    # A fresh warning goes out once the new date comes back into range.
    if sub.data_retention_end_date > today + timedelta(days=settings.DELETION_WARNING_DAYS):
        sub.deletion_warning_sent_at = None
    record_change(
        db,
        sub,
        operation="retention_extended",
        before=sub.status,
        actor=actor,
        data={
            "old_end_date": old_end,
            "new_end_date": sub.data_retention_end_date,
            "extension_days": extension_days,
            "note": note,
        },
    )
    return sub


def cancel_deletion(db: Session, *, church_id, actor=None, now: datetime | None = None) -> ChurchSubscription:
    """Stop the deletion countdown. The subscription stays SUSPENDED."""
    now = now or now_utc()
    sub = lock_subscription(db, church_id)
    _require_suspended(sub, "cancel deletion")
    sub.deletion_canceled_at = now
    record_change(
        db,
        sub,
        operation="deletion_canceled",
        before=sub.status,
        actor=actor,
        data={"data_retention_end_date": sub.data_retention_end_date},
    )
    logger.warning("retention.deletion_canceled", church_id=str(sub.church_id), actor=(str(actor) if actor else None))
    return sub


def days_until_deletion(sub: ChurchSubscription, today: date) -> int:
    return (sub.data_retention_end_date - today).days


def list_pending_deletions(db: Session, *, today: date | None = None) -> list[PendingDeletion]:
    today = today or today_utc()
    rows = db.execute(
        sa.select(ChurchSubscription, Church.name)
        .join(Church, Church.id == ChurchSubscription.church_id)
        .where(
            ChurchSubscription.status == SubscriptionStatus.SUSPENDED.value,
            ChurchSubscription.data_retention_end_date.is_not(None),
            ChurchSubscription.deletion_canceled_at.is_(None),
        )
        .order_by(ChurchSubscription.data_retention_end_date.asc())
    ).all()

    out = []
    for sub, church_name in rows:
        days_left = days_until_deletion(sub, today)
        warning_on = sub.data_retention_end_date - timedelta(days=settings.DELETION_WARNING_DAYS)
        out.append(
            PendingDeletion(
                church_id=str(sub.church_id),
                church_name=church_name,
                suspended_at=sub.suspended_at,
                data_retention_end_date=sub.data_retention_end_date,
                days_until_deletion=days_left,
                days_until_warning=(warning_on - today).days,
                urgency=compute_urgency(days_left),
                retention_extension_days=int(sub.retention_extension_days or 0),
                retention_extension_note=sub.retention_extension_note,
                warning_sent=sub.deletion_warning_sent_at is not None,
            )
        )
    return out


def due_for_warning(db: Session, *, today: date, limit: int) -> list[ChurchSubscription]:
    threshold = today + timedelta(days=settings.DELETION_WARNING_DAYS)
    return list(
        db.execute(
            sa.select(ChurchSubscription)
            .where(
                ChurchSubscription.status == SubscriptionStatus.SUSPENDED.value,
                ChurchSubscription.deletion_canceled_at.is_(None),
                ChurchSubscription.deletion_warning_sent_at.is_(None),
                ChurchSubscription.data_retention_end_date <= threshold,
            )
            .order_by(ChurchSubscription.data_retention_end_date.asc())
            .limit(limit)
        ).scalars()
    )


def due_for_deletion(db: Session, *, today: date, limit: int) -> list[ChurchSubscription]:
    return list(
        db.execute(
            sa.select(ChurchSubscription)
            .where(
                ChurchSubscription.status == SubscriptionStatus.SUSPENDED.value,
                ChurchSubscription.deletion_canceled_at.is_(None),
                ChurchSubscription.data_retention_end_date <= today,
            )
            .order_by(ChurchSubscription.data_retention_end_date.asc())
            .limit(limit)
        ).scalars()
    )


def mark_warning_sent(db: Session, *, church_id, now: datetime | None = None) -> ChurchSubscription | None:
    now = now or now_utc()
    sub = lock_subscription(db, church_id)
    if sub.status != SubscriptionStatus.SUSPENDED.value or sub.deletion_warning_sent_at is not None:
        return None
    sub.deletion_warning_sent_at = now
    record_change(
        db,
        sub,
        operation="deletion_warning_sent",
        before=sub.status,
        data={"data_retention_end_date": sub.data_retention_end_date},
    )
    return sub
