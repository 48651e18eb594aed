from datetime import date, timedelta
from types import SimpleNamespace

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.core.errors import InvalidStateTransition, JobAlreadyRunning, JobNotFound
from app.core.security import now_utc
from app.models.job_execution import ScheduledJobExecution
from app.models.payment import PaymentIntent
from app.models.subscription import ChurchSubscription
from app.services.job_execution import (
    cancel_execution,
    execute_execution,
    failed_executions,
    job_stats,
    retry_execution,
    run_job,
    start_execution,
)
from app.services.scheduled_jobs import JOB_REGISTRY
from app.workers import tasks
from app.workers.celery_app import cron_schedule
from tests.testkit import FakeGateway, RecordingNotifier, make_church, make_subscription, make_tier

TODAY = date(2026, 3, 10)


@pytest.fixture()
def tier(db):
    return make_tier(db, "PLUS", monthly="30.00")


def _suspended(db, tier, name, retention_end):
    church = make_church(db, name=name, email=f"{name.lower()}@church.test")
    return make_subscription(db, church, tier, status="SUSPENDED", data_retention_end_date=retention_end)


def test_deletion_job_only_deletes_expired_retention(db, tier):
    expired = [
        _suspended(db, tier, "Bethel", date(2026, 3, 1)),
        _suspended(db, tier, "Calvary", date(2026, 3, 5)),
        _suspended(db, tier, "Zion", TODAY),
    ]
    future = _suspended(db, tier, "Hope", date(2026, 4, 1))
    db.commit()

    execution = run_job(db, "delete_expired_church_data", today=TODAY)

    assert execution.status == "SUCCESS"
    assert execution.items_processed == 3
    assert execution.items_failed == 0
    for sub in expired:
        db.refresh(sub)
        assert sub.status == "CANCELED"
        assert sub.data_deleted_at is not None
    db.refresh(future)
    assert future.status == "SUSPENDED"
    assert future.data_deleted_at is None


def test_second_start_while_running_is_rejected(db):
    first = start_execution(db, job_name="delete_expired_church_data")
    with pytest.raises(JobAlreadyRunning):
        start_execution(db, job_name="delete_expired_church_data")

    execute_execution(db, first.id, today=TODAY)
    assert first.status == "SUCCESS"

    again = start_execution(db, job_name="delete_expired_church_data")
    assert again.status == "RUNNING"
    assert again.id != first.id


def test_unknown_job_is_rejected(db):
    with pytest.raises(JobNotFound):
        start_execution(db, job_name="sendDailyEventReminders")


def test_canceled_execution_closes_as_canceled(db):
    execution = start_execution(db, job_name="weekly_cleanup", manually_triggered=True, triggered_by="ops")
    cancel_execution(db, execution.id, canceled_by="ops")
    db.commit()

    execute_execution(db, execution.id, today=TODAY)

    assert execution.status == "CANCELED"
    assert execution.canceled_by == "ops"
    with pytest.raises(InvalidStateTransition):
        cancel_execution(db, execution.id)


def test_failed_run_records_error_and_can_be_retried(db, tier):
    # no FREE tier configured
    execution = run_job(db, "downgrade_expired_cancellations", today=TODAY)

    assert execution.status == "FAILED"
    assert "FREE" in execution.error_message
    assert "TierNotFound" in execution.stack_trace
    assert [e.id for e in failed_executions(db)] == [execution.id]

    retry = retry_execution(db, execution.id, triggered_by="ops")
    assert retry.status == "RUNNING"
    assert retry.retry_count == 1
    assert retry.retry_of_id == execution.id
    assert retry.manually_triggered

    execute_execution(db, retry.id, today=TODAY)
    assert retry.status == "FAILED"
    assert {e.id for e in failed_executions(db)} == {execution.id, retry.id}
    assert failed_executions(db, max_retries=1) == [execution]


def test_successful_execution_cannot_be_retried(db):
    execution = run_job(db, "weekly_cleanup", today=TODAY)
    assert execution.status == "SUCCESS"
    with pytest.raises(InvalidStateTransition):
        retry_execution(db, execution.id)


def test_renewal_job_charges_saved_card(db, tier, gateway, notifier):
    church = make_church(db)
    sub = make_subscription(db, church, tier, period_start=date(2026, 2, 10), payment_authorization_code="AUTH_ok")
    db.commit()

    execution = run_job(db, "process_subscription_renewals", today=TODAY, gateway=gateway, notifier=notifier)

    assert execution.status == "SUCCESS"
    assert execution.items_processed == 1
    assert len(gateway.requests) == 1
    assert gateway.requests[0].reference.startswith("RENEWAL-")
    db.refresh(sub)
    assert sub.status == "ACTIVE"
    assert sub.current_period_start == TODAY
    assert sub.next_billing_date == date(2026, 4, 10)
    intent = db.execute(sa.select(PaymentIntent)).scalar_one()
    assert intent.status == "SUCCESS"
    assert len(notifier.of("renewal_confirmation")) == 1


def test_declined_renewal_moves_to_past_due(db, tier, gateway, notifier):
    church = make_church(db)
    sub = make_subscription(db, church, tier, period_start=date(2026, 2, 10), payment_authorization_code="AUTH_ok")
    db.commit()
    gateway.decline = True

    run_job(db, "process_subscription_renewals", today=TODAY, gateway=gateway, notifier=notifier)

    db.refresh(sub)
    assert sub.status == "PAST_DUE"
    assert sub.failed_payment_attempts == 1
    assert notifier.of("payment_failed")[0]["reason"] == "Insufficient funds"


def test_renewal_uses_promotional_month_before_charging(db, tier, gateway, notifier):
    church = make_church(db)
    sub = make_subscription(db, church, tier, period_start=date(2026, 2, 10), free_months_remaining=1)
    db.commit()

    run_job(db, "process_subscription_renewals", today=TODAY, gateway=gateway, notifier=notifier)

    db.refresh(sub)
    assert gateway.requests == []
    assert sub.free_months_remaining == 0
    assert sub.status == "ACTIVE"
    assert sub.next_billing_date == date(2026, 4, 10)


def test_one_failing_church_does_not_stop_the_renewal_run(db, tier, gateway, notifier):
    ok = make_subscription(
        db, make_church(db, name="Ok", email="ok@church.test"), tier,
        period_start=date(2026, 2, 10), payment_authorization_code="AUTH_1",
    )
    broken = make_subscription(
        db, make_church(db, name="Broken", email="broken@church.test"), tier,
        period_start=date(2026, 2, 9), payment_authorization_code="AUTH_2",
    )
    db.commit()
    gateway.explode_for = {"broken@church.test"}

    execution = run_job(db, "process_subscription_renewals", today=TODAY, gateway=gateway, notifier=notifier)

    assert execution.status == "SUCCESS"
    assert execution.items_processed == 1
    assert execution.items_failed == 1
    db.refresh(ok)
    db.refresh(broken)
    assert ok.next_billing_date == date(2026, 4, 10)
    assert broken.status == "ACTIVE"
    assert broken.next_billing_date == date(2026, 3, 9)


def test_suspension_job_respects_grace_period(db, tier, notifier):
    overdue = make_subscription(
        db, make_church(db, name="Overdue"), tier,
        status="PAST_DUE", period_start=date(2026, 2, 1), grace_period_days=7,
    )
    in_grace = make_subscription(
        db, make_church(db, name="InGrace"), tier,
        status="PAST_DUE", period_start=date(2026, 2, 5), grace_period_days=7,
    )
    db.commit()

    execution = run_job(db, "suspend_past_due_subscriptions", today=TODAY, notifier=notifier)

    assert execution.items_processed == 1
    db.refresh(overdue)
    db.refresh(in_grace)
    assert overdue.status == "SUSPENDED"
    assert overdue.data_retention_end_date == TODAY + timedelta(days=30)
    assert in_grace.status == "PAST_DUE"
    assert len(notifier.of("suspension_notice")) == 1


def test_deletion_warning_is_sent_once(db, tier, notifier):
    soon = _suspended(db, tier, "Soon", date(2026, 3, 14))
    _suspended(db, tier, "Later", date(2026, 4, 30))
    db.commit()

    first = run_job(db, "send_deletion_warnings", today=TODAY, notifier=notifier)
    second = run_job(db, "send_deletion_warnings", today=TODAY, notifier=notifier)

    assert first.items_processed == 1
    assert second.items_processed == 0
    warnings = notifier.of("deletion_warning")
    assert len(warnings) == 1
    assert warnings[0]["days_remaining"] == 4
    assert warnings[0]["church_id"] == str(soon.church_id)


def test_expired_cancellation_is_moved_to_free_tier(db, tier):
    free = make_tier(db, "FREE", monthly="0.00", is_free=True)
    sub = make_subscription(db, make_church(db), tier, status="CANCELED", ends_at=date(2026, 2, 28))
    db.commit()

    execution = run_job(db, "downgrade_expired_cancellations", today=TODAY)

    assert execution.status == "SUCCESS"
    db.refresh(sub)
    assert sub.pricing_tier_id == free.id
    assert sub.status == "CANCELED"


def test_weekly_cleanup_drops_old_executions(db):
    old = ScheduledJobExecution(
        job_name="send_deletion_warnings",
        status="SUCCESS",
        start_time=now_utc() - timedelta(days=120),
    )
    db.add(old)
    db.commit()
    old_id = old.id

    execution = run_job(db, "weekly_cleanup", today=TODAY)

    assert execution.status == "SUCCESS"
    assert execution.items_processed == 1
    remaining = db.execute(
        sa.select(sa.func.count()).select_from(ScheduledJobExecution).where(ScheduledJobExecution.id == old_id)
    ).scalar_one()
    assert remaining == 0


def test_stats_cover_every_registered_job(db):
    run_job(db, "weekly_cleanup", today=TODAY)
    stats = {row["job_name"]: row for row in job_stats(db)}
    assert set(stats) == set(JOB_REGISTRY)
    assert stats["weekly_cleanup"]["success"] == 1
    assert stats["weekly_cleanup"]["last_run_at"] is not None


def test_registry_schedules_parse_as_cron():
    for definition in JOB_REGISTRY.values():
        assert len(definition.cron.split()) == 5
        cron_schedule(definition.cron)
    schedule = cron_schedule(JOB_REGISTRY["downgrade_expired_cancellations"].cron)
    assert schedule.minute == {30}
    assert schedule.hour == {3}


def test_running_subscriptions_are_untouched_by_unrelated_jobs(db, tier):
    sub = make_subscription(db, make_church(db), tier, period_start=date(2026, 3, 1))
    db.commit()
    run_job(db, "suspend_past_due_subscriptions", today=TODAY)
    run_job(db, "delete_expired_church_data", today=TODAY)
    assert db.get(ChurchSubscription, sub.id).status == "ACTIVE"


def test_abandoned_run_is_released_on_next_start(db):
    stale = ScheduledJobExecution(
        job_name="weekly_cleanup", status="RUNNING", start_time=now_utc() - timedelta(hours=7)
    )
    db.add(stale)
    db.commit()

    execution = run_job(db, "weekly_cleanup", today=TODAY)

    assert execution.status == "SUCCESS"
    db.refresh(stale)
    assert stale.status == "FAILED"
    assert stale.error_message.startswith("Abandoned")
    assert stale.end_time is not None


def test_recent_run_still_blocks_a_new_start(db):
    db.add(ScheduledJobExecution(job_name="weekly_cleanup", status="RUNNING", start_time=now_utc() - timedelta(hours=1)))
    db.commit()

    with pytest.raises(JobAlreadyRunning):
        start_execution(db, job_name="weekly_cleanup")


def test_flagged_run_past_soft_limit_is_closed_canceled(db):
    first = start_execution(db, job_name="weekly_cleanup")
    cancel_execution(db, first.id, canceled_by="ops")
    first.start_time = now_utc() - timedelta(hours=2)
    db.commit()

    again = start_execution(db, job_name="weekly_cleanup")

    assert again.status == "RUNNING"
    db.refresh(first)
    assert first.status == "CANCELED"
    assert first.canceled_by == "ops"


def test_failed_enqueue_closes_the_row(db, monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(settings, "JOB_DISPATCH_MODE", "celery")
    monkeypatch.setattr(tasks, "execute_job_execution", SimpleNamespace(delay=refuse))
    execution = start_execution(db, job_name="weekly_cleanup", manually_triggered=True)

    tasks.dispatch_execution(db, execution.id)

    db.refresh(execution)
    assert execution.status == "FAILED"
    assert "broker unreachable" in execution.error_message
    assert start_execution(db, job_name="weekly_cleanup").status == "RUNNING"


def test_cancel_is_observed_between_items(db, tier):
    first = make_subscription(
        db, make_church(db, name="First", email="first@church.test"), tier,
        status="PAST_DUE", period_start=date(2026, 1, 15), grace_period_days=7,
    )
    second = make_subscription(
        db, make_church(db, name="Second", email="second@church.test"), tier,
        status="PAST_DUE", period_start=date(2026, 2, 1), grace_period_days=7,
    )
    db.commit()
    execution = start_execution(db, job_name="suspend_past_due_subscriptions", manually_triggered=True)

    class CancelingNotifier(RecordingNotifier):
        def send_suspension_notice(self, **kwargs):
            super().send_suspension_notice(**kwargs)
            cancel_execution(db, execution.id, canceled_by="ops")
            db.commit()

    notifier = CancelingNotifier()
    execute_execution(db, execution.id, today=TODAY, notifier=notifier)

    assert execution.status == "CANCELED"
    assert execution.items_processed == 1
    db.refresh(first)
    db.refresh(second)
    assert first.status == "SUSPENDED"
    assert second.status == "PAST_DUE"
    assert len(notifier.of("suspension_notice")) == 1


class LostConnectionGateway(FakeGateway):
    def charge_authorization(self, request):
        self.requests.append(request)
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))


def test_lost_database_connection_fails_the_whole_run(db, tier, notifier):
    for name, start in (("Early", date(2026, 2, 9)), ("Late", date(2026, 2, 10))):
        make_subscription(
            db, make_church(db, name=name, email=f"{name.lower()}@church.test"), tier,
            period_start=start, payment_authorization_code=f"AUTH_{name}",
        )
    db.commit()
    gateway = LostConnectionGateway()

    execution = run_job(db, "process_subscription_renewals", today=TODAY, gateway=gateway, notifier=notifier)

    assert execution.status == "FAILED"
    assert "server closed" in execution.error_message
    assert execution.items_processed == 0
    assert len(gateway.requests) == 1
    assert notifier.sent == []
