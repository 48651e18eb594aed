"""Registered background jobs.

``JOB_REGISTRY`` is the only place a job gets a name and a schedule. The Celery
beat ticker and the operator API both look jobs up here; execution records are
handled by ``app.services.job_execution``. Every body takes ``(db, run)`` and
pushes its per-church work through ``run.process`` so each church commits on its
own and the cancel flag is honoured between churches.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import TierNotFound
from app.core.logging import get_logger
from app.core.security import now_utc
from app.models.church import Church
from app.models.job_execution import ScheduledJobExecution
from app.models.payment import PaymentWebhookEvent
from app.models.subscription import ChurchSubscription, PricingTier
from app.services import payment_ledger
from app.services.notifications import notify_safely
from app.services.payment_gateway import ChargeRequest
from app.services.retention import days_until_deletion, due_for_deletion, due_for_warning, mark_warning_sent
from app.services.subscription_state import (
    SubscriptionStatus,
    apply_renewal,
    downgrade_to_free_tier,
    lock_subscription,
    mark_data_deleted,
    mark_past_due,
    should_suspend,
    state_of,
    suspend,
)

logger = get_logger(__name__)

RENEWABLE = (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)


@dataclass(frozen=True)
class JobDefinition:
    name: str
    fn: Callable
    description: str
    # minute hour day_of_month month_of_year day_of_week, UTC
    cron: str


def _contact_email(db: Session, sub: ChurchSubscription) -> str | None:
    church = db.get(Church, sub.church_id)
    if church is not None and church.email:
        return church.email
    return sub.payment_email


# -- send_deletion_warnings ---------------------------------------------------


def send_deletion_warnings(db: Session, run):
    church_ids = [s.church_id for s in due_for_warning(db, today=run.today, limit=settings.JOB_BATCH_SIZE)]
    db.commit()

    def warn(church_id):
        sub = mark_warning_sent(db, church_id=church_id)
        if sub is None:
            return False
        email = _contact_email(db, sub)
        deletion_date = sub.data_retention_end_date
        days_left = days_until_deletion(sub, run.today)
        run.after_commit(
            lambda: notify_safely(
                run.notifier.send_deletion_warning,
                church_id=str(church_id),
                email=email,
                deletion_date=deletion_date,
                days_remaining=days_left,
            )
        )
        return True

    run.process(church_ids, warn, label="church")


# -- process_subscription_renewals --------------------------------------------


def _due_for_renewal(db: Session, run) -> list:
    return list(
        db.execute(
            sa.select(ChurchSubscription.church_id)
            .where(
                ChurchSubscription.status.in_(RENEWABLE),
                ChurchSubscription.auto_renew.is_(True),
                ChurchSubscription.next_billing_date <= run.today,
            )
            .order_by(ChurchSubscription.next_billing_date.asc())
            .limit(settings.JOB_BATCH_SIZE)
        ).scalars()
    )


def _renew(db: Session, run, church_id) -> bool:
    sub = lock_subscription(db, church_id)
    if (
        sub.status not in RENEWABLE
        or not sub.auto_renew
        or sub.next_billing_date is None
        or sub.next_billing_date > run.today
    ):
        return False
    if should_suspend(state_of(sub), run.today):
        return False

    tier = sub.pricing_tier
    if tier.is_free:
        apply_renewal(db, church_id=sub.church_id)
        return True
    if int(sub.free_months_remaining or 0) > 0:
        apply_renewal(db, church_id=sub.church_id, used_free_month=True)
        return True

    email = sub.payment_email
    if not sub.payment_authorization_code:
        if sub.status == SubscriptionStatus.PAST_DUE.value:
            return False
        mark_past_due(db, church_id=sub.church_id, reason="No payment method on file")
        run.after_commit(
            lambda: notify_safely(
                run.notifier.send_payment_failed,
                church_id=str(church_id),
                email=email,
                reason="No payment method on file",
            )
        )
        return True

    amount = tier.price_for_interval(sub.billing_interval)
    intent = payment_ledger.create_intent(
        db,
        church_id=sub.church_id,
        intent_type="RENEWAL",
        amount=amount,
        description=f"{tier.name} renewal ({sub.billing_interval})",
        metadata={
            "church_id": str(sub.church_id),
            "pricing_tier_id": str(tier.id),
            "billing_interval": sub.billing_interval,
        },
    )
    request = ChargeRequest(
        authorization_code=sub.payment_authorization_code,
        email=email,
        amount=intent.amount,
        currency=intent.currency,
        reference=intent.reference,
    )
    # The row lock is released while the gateway is called.
    db.commit()

    result = run.gateway.charge_authorization(request)
    if result.success:
        payment_ledger.mark_succeeded(db, reference=intent.reference, gateway_transaction_id=result.gateway_transaction_id)
    else:
        payment_ledger.mark_failed(db, reference=intent.reference, reason=result.message)
    db.refresh(intent)

    if intent.status == "SUCCESS":
        renewed = apply_renewal(db, church_id=church_id, reference=intent.reference)
        next_billing, paid = renewed.next_billing_date, intent.amount
        run.after_commit(
            lambda: notify_safely(
                run.notifier.send_renewal_confirmation,
                church_id=str(church_id),
                email=email,
                amount=paid,
                next_billing_date=next_billing,
            )
        )
    else:
        reason = intent.failure_reason or "Renewal charge declined"
        mark_past_due(db, church_id=church_id, reason=reason)
        run.after_commit(
            lambda: notify_safely(run.notifier.send_payment_failed, church_id=str(church_id), email=email, reason=reason)
        )
    return True


def process_subscription_renewals(db: Session, run):
    church_ids = _due_for_renewal(db, run)
    db.commit()
    run.process(church_ids, lambda church_id: _renew(db, run, church_id), label="church")


# -- suspend_past_due_subscriptions -------------------------------------------


def suspend_past_due_subscriptions(db: Session, run):
    church_ids = list(
        db.execute(
            sa.select(ChurchSubscription.church_id)
            .where(ChurchSubscription.status == SubscriptionStatus.PAST_DUE.value)
            .order_by(ChurchSubscription.next_billing_date.asc())
        ).scalars()
    )
    db.commit()

    def maybe_suspend(church_id):
        sub = lock_subscription(db, church_id)
        if not should_suspend(state_of(sub), run.today):
            return False
        sub = suspend(db, church_id=church_id, today=run.today)
        email = _contact_email(db, sub)
        retention_end = sub.data_retention_end_date
        run.after_commit(
            lambda: notify_safely(
                run.notifier.send_suspension_notice,
                church_id=str(church_id),
                email=email,
                data_retention_end_date=retention_end,
            )
        )
        return True

    run.process(church_ids, maybe_suspend, label="church")


# -- downgrade_expired_cancellations ------------------------------------------


def downgrade_expired_cancellations(db: Session, run):
    free_tier = db.execute(
        sa.select(PricingTier).where(sa.func.upper(PricingTier.code) == settings.FREE_TIER_CODE.upper())
    ).scalar_one_or_none()
    if free_tier is None:
        raise TierNotFound(f"Free tier {settings.FREE_TIER_CODE} is not configured")

    church_ids = list(
        db.execute(
            sa.select(ChurchSubscription.church_id).where(
                ChurchSubscription.status == SubscriptionStatus.CANCELED.value,
                ChurchSubscription.data_deleted_at.is_(None),
                ChurchSubscription.ends_at < run.today,
                ChurchSubscription.pricing_tier_id != free_tier.id,
            )
        ).scalars()
    )
    db.commit()

    run.process(
        church_ids,
        lambda church_id: downgrade_to_free_tier(db, church_id=church_id, free_tier=free_tier, today=run.today) is not None,
        label="church",
    )


# -- delete_expired_church_data -----------------------------------------------


def delete_expired_church_data(db: Session, run):
    church_ids = [s.church_id for s in due_for_deletion(db, today=run.today, limit=settings.JOB_BATCH_SIZE)]
    db.commit()
    if church_ids:
        logger.warning("retention.deleting_church_data", count=len(church_ids))
    run.process(church_ids, lambda church_id: mark_data_deleted(db, church_id=church_id, today=run.today), label="church")


# -- weekly_cleanup -----------------------------------------------------------


def cleanup_old_executions(db: Session, *, older_than_days: int | None = None) -> int:
    days = settings.JOB_EXECUTION_RETENTION_DAYS if older_than_days is None else older_than_days
    cutoff = now_utc() - timedelta(days=days)
    old_ids = sa.select(ScheduledJobExecution.id).where(
        ScheduledJobExecution.start_time < cutoff,
        ScheduledJobExecution.status != "RUNNING",
    )
    # Retries outlive the runs they point at.
    db.execute(
        sa.update(ScheduledJobExecution)
        .where(ScheduledJobExecution.retry_of_id.in_(old_ids))
        .values(retry_of_id=None)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(
        sa.delete(ScheduledJobExecution)
        .where(ScheduledJobExecution.start_time < cutoff, ScheduledJobExecution.status != "RUNNING")
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def cleanup_old_webhook_events(db: Session, *, older_than_days: int | None = None) -> int:
    days = settings.JOB_EXECUTION_RETENTION_DAYS if older_than_days is None else older_than_days
    cutoff = now_utc() - timedelta(days=days)
    result = db.execute(
        sa.delete(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.received_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def weekly_cleanup(db: Session, run):
    executions = cleanup_old_executions(db)
    events = cleanup_old_webhook_events(db)
    db.commit()
    run.items_processed += executions + events
    logger.info("cleanup.finished", executions_deleted=executions, webhook_events_deleted=events)


JOB_REGISTRY: dict[str, JobDefinition] = {
    d.name: d
    for d in (
        JobDefinition(
            name="send_deletion_warnings",
            fn=send_deletion_warnings,
            description="Warn suspended churches whose data is deleted within the warning window",
            cron="0 1 * * *",
        ),
        JobDefinition(
            name="process_subscription_renewals",
            fn=process_subscription_renewals,
            description="Charge subscriptions due for renewal, promotional months first",
            cron="0 2 * * *",
        ),
        JobDefinition(
            name="suspend_past_due_subscriptions",
            fn=suspend_past_due_subscriptions,
            description="Suspend past-due subscriptions whose grace period has elapsed",
            cron="0 3 * * *",
        ),
        JobDefinition(
            name="downgrade_expired_cancellations",
            fn=downgrade_expired_cancellations,
            description="Move canceled subscriptions past their end date onto the free tier",
            cron="30 3 * * *",
        ),
        JobDefinition(
            name="delete_expired_church_data",
            fn=delete_expired_church_data,
            description="Permanently delete data of churches whose retention window has ended",
            cron="0 4 * * *",
        ),
        JobDefinition(
            name="weekly_cleanup",
            fn=weekly_cleanup,
            description="Remove old job executions and webhook events",
            cron="0 2 * * 0",
        ),
    )
}
