"""Scheduled-job execution records.

Every run of a registered job owns one ``ScheduledJobExecution`` row. The row is
inserted RUNNING and committed before the job body starts, so the partial unique
index on ``job_name WHERE status = 'RUNNING'`` is the lock that keeps two runs of
the same job apart across processes. Job bodies receive a ``JobRun`` and process
their items through ``JobRun.process``, which commits per item and checks the
cooperative cancel flag in between.
"""

from __future__ import annotations

import time
import traceback
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Iterable

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ExecutionNotFound, InvalidStateTransition, JobAlreadyRunning, JobNotFound
from app.core.logging import get_logger
from app.core.security import as_utc, now_utc, today_utc
from app.models.job_execution import ScheduledJobExecution
from app.services.notifications import Notifier, get_notifier
from app.services.payment_gateway import PaymentGateway, get_gateway
from app.services.scheduled_jobs import JOB_REGISTRY, JobDefinition

logger = get_logger(__name__)

SYSTEMIC_ERRORS = (OperationalError, InterfaceError)
MAX_AUTOMATIC_RETRIES = 3


class JobRun:
    """Handle passed to a job body for the duration of one execution."""

    def __init__(
        self,
        db: Session,
        execution_id: uuid.UUID,
        *,
        today: date | None = None,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.execution_id = execution_id
        self.today = today or today_utc()
        self.gateway = gateway or get_gateway()
        self.notifier = notifier or get_notifier()
        self.items_processed = 0
        self.items_failed = 0
        self.canceled = False
        self._deferred: list[Callable[[], None]] = []

    def cancel_requested(self) -> bool:
        flag = self.db.execute(
            sa.select(ScheduledJobExecution.canceled).where(ScheduledJobExecution.id == self.execution_id)
        ).scalar_one_or_none()
        if flag:
            self.canceled = True
        return bool(flag)

    def after_commit(self, fn: Callable[[], None]):
        self._deferred.append(fn)

    def _flush_deferred(self):
        pending, self._deferred = self._deferred, []
        for fn in pending:
            fn()

    def process(self, items: Iterable, fn: Callable[[object], object], *, label: str = "item") -> None:
        """Run ``fn`` for each item in its own transaction.

        ``fn`` returning ``False`` means there was nothing to do for that item and
        it is not counted. Item errors are counted and the run moves on; lost
        database connectivity aborts the run.
        """
        for item in items:
            if self.cancel_requested():
                logger.info("job.execution.cancel_observed", execution_id=str(self.execution_id))
                return
            try:
                result = fn(item)
                self.db.commit()
            except SYSTEMIC_ERRORS:
                self.db.rollback()
                self._deferred = []
                raise
            except Exception:
                self.db.rollback()
                self._deferred = []
                self.items_failed += 1
                logger.exception("job.item_failed", execution_id=str(self.execution_id), label=label, item=str(item))
                continue
            if result is not False:
                self.items_processed += 1
            self._flush_deferred()


def get_job_definition(job_name: str) -> JobDefinition:
    definition = JOB_REGISTRY.get(job_name)
    if definition is None:
        raise JobNotFound(f"Unknown job: {job_name}", job_name=job_name)
    return definition


def get_execution(db: Session, execution_id) -> ScheduledJobExecution:
    try:
        key = execution_id if isinstance(execution_id, uuid.UUID) else uuid.UUID(str(execution_id))
    except ValueError:
        raise ExecutionNotFound(f"Execution {execution_id} not found") from None
    row = db.get(ScheduledJobExecution, key)
    if row is None:
        raise ExecutionNotFound(f"Execution {execution_id} not found")
    return row


def running_execution(db: Session, job_name: str) -> ScheduledJobExecution | None:
    return db.execute(
        sa.select(ScheduledJobExecution).where(
            ScheduledJobExecution.job_name == job_name,
            ScheduledJobExecution.status == "RUNNING",
        )
    ).scalar_one_or_none()


def _force_close(db: Session, execution: ScheduledJobExecution, *, status: str, reason: str | None, now: datetime) -> bool:
    duration_ms = int((now - as_utc(execution.start_time)).total_seconds() * 1000)
    result = db.execute(
        sa.update(ScheduledJobExecution)
        .where(ScheduledJobExecution.id == execution.id, ScheduledJobExecution.status == "RUNNING")
        .values(status=status, end_time=now, duration_ms=duration_ms, error_message=reason)
    )
    if result.rowcount != 1:
        return False
    logger.warning(
        "job.execution.released",
        job_name=execution.job_name,
        execution_id=str(execution.id),
        status=status,
        duration_ms=duration_ms,
        reason=reason,
    )
    return True


def release_stale_executions(db: Session, *, job_name: str | None = None, now: datetime | None = None) -> int:
    """Close RUNNING rows whose worker is gone so the job name can run again.

    A run flagged for cancel that is still RUNNING past the soft time limit is
    closed CANCELED. Any RUNNING row older than ``JOB_STALE_AFTER_SECONDS`` is
    closed FAILED. A worker that is in fact still alive finds its row closed and
    its own close becomes a no-op.
    """
    now = now or now_utc()
    q = sa.select(ScheduledJobExecution).where(ScheduledJobExecution.status == "RUNNING")
    if job_name:
        q = q.where(ScheduledJobExecution.job_name == job_name)
    released = 0
    for execution in list(db.execute(q).scalars()):
        age = (now - as_utc(execution.start_time)).total_seconds()
        if execution.canceled and age > settings.JOB_SOFT_TIME_LIMIT_SECONDS:
            closed = _force_close(db, execution, status="CANCELED", reason=None, now=now)
        elif age > settings.JOB_STALE_AFTER_SECONDS:
            reason = f"Abandoned: still RUNNING after {int(age)}s with no worker reporting"
            closed = _force_close(db, execution, status="FAILED", reason=reason, now=now)
        else:
            continue
        released += int(closed)
    if released:
        db.commit()
    return released


def fail_execution(db: Session, execution_id, *, reason: str) -> ScheduledJobExecution:
    """Close a RUNNING execution that will never reach a worker."""
    execution = get_execution(db, execution_id)
    _force_close(db, execution, status="FAILED", reason=reason[:2000], now=now_utc())
    db.commit()
    db.refresh(execution)
    return execution


def start_execution(
    db: Session,
    *,
    job_name: str,
    manually_triggered: bool = False,
    triggered_by: str | None = None,
    retry_count: int = 0,
    retry_of_id: uuid.UUID | None = None,
) -> ScheduledJobExecution:
    """Insert and commit the RUNNING row, or raise ``JobAlreadyRunning``."""
    definition = get_job_definition(job_name)
    release_stale_executions(db, job_name=job_name)
    current = running_execution(db, job_name)
    if current is not None:
        raise JobAlreadyRunning(
            f"Job {job_name} is already running",
            job_name=job_name,
            execution_id=str(current.id),
        )

    row = ScheduledJobExecution(
        job_name=job_name,
        description=definition.description,
        status="RUNNING",
        start_time=now_utc(),
        manually_triggered=manually_triggered,
        triggered_by=triggered_by,
        retry_count=retry_count,
        retry_of_id=retry_of_id,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise JobAlreadyRunning(f"Job {job_name} is already running", job_name=job_name) from None
    logger.info(
        "job.execution.started",
        job_name=job_name,
        execution_id=str(row.id),
        manually_triggered=manually_triggered,
        triggered_by=triggered_by,
        retry_count=retry_count,
    )
    return row


def _close(db: Session, execution: ScheduledJobExecution, *, status: str, run: JobRun, error: BaseException | None, trace: str | None):
    end = now_utc()
    duration_ms = int((end - as_utc(execution.start_time)).total_seconds() * 1000)
    db.execute(
        sa.update(ScheduledJobExecution)
        .where(ScheduledJobExecution.id == execution.id, ScheduledJobExecution.status == "RUNNING")
        .values(
            status=status,
            end_time=end,
            duration_ms=duration_ms,
            items_processed=run.items_processed,
            items_failed=run.items_failed,
            error_message=(str(error)[:2000] if error is not None else None),
            stack_trace=trace,
        )
    )
    db.commit()
    db.refresh(execution)

    log = logger.error if status == "FAILED" else logger.info
    log(
        "job.execution.finished",
        job_name=execution.job_name,
        execution_id=str(execution.id),
        status=status,
        duration_ms=duration_ms,
        items_processed=run.items_processed,
        items_failed=run.items_failed,
    )
    if duration_ms > settings.JOB_SOFT_TIME_LIMIT_SECONDS * 1000:
        logger.warning(
            "job.execution.overran",
            job_name=execution.job_name,
            execution_id=str(execution.id),
            duration_ms=duration_ms,
            soft_limit_seconds=settings.JOB_SOFT_TIME_LIMIT_SECONDS,
        )


def execute_execution(
    db: Session,
    execution_id,
    *,
    today: date | None = None,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
) -> ScheduledJobExecution:
    """Run the body for an execution already started, then close its row."""
    execution = get_execution(db, execution_id)
    if execution.status != "RUNNING":
        logger.info("job.execution.already_closed", execution_id=str(execution.id), status=execution.status)
        return execution

    definition = get_job_definition(execution.job_name)
    run = JobRun(db, execution.id, today=today, gateway=gateway, notifier=notifier)
    started = time.monotonic()
    error: BaseException | None = None
    trace: str | None = None
    try:
        definition.fn(db, run)
        db.commit()
    except Exception as exc:
        db.rollback()
        error, trace = exc, traceback.format_exc()
        logger.exception("job.execution.error", job_name=execution.job_name, execution_id=str(execution.id))

    if error is not None:
        status = "FAILED"
    elif run.canceled or run.cancel_requested():
        status = "CANCELED"
    else:
        status = "SUCCESS"
    logger.debug("job.execution.body_finished", execution_id=str(execution.id), elapsed=round(time.monotonic() - started, 3))
    _close(db, execution, status=status, run=run, error=error, trace=trace)
    return execution


def run_job(
    db: Session,
    job_name: str,
    *,
    manually_triggered: bool = False,
    triggered_by: str | None = None,
    today: date | None = None,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
) -> ScheduledJobExecution:
    execution = start_execution(db, job_name=job_name, manually_triggered=manually_triggered, triggered_by=triggered_by)
    return execute_execution(db, execution.id, today=today, gateway=gateway, notifier=notifier)


def retry_execution(db: Session, execution_id, *, triggered_by: str | None = None) -> ScheduledJobExecution:
    """Start a fresh run of a FAILED execution's job, linked back to it."""
    failed = get_execution(db, execution_id)
    if failed.status != "FAILED":
        raise InvalidStateTransition(
            f"Only FAILED executions can be retried, execution {failed.id} is {failed.status}",
            execution_id=str(failed.id),
        )
    return start_execution(
        db,
        job_name=failed.job_name,
        manually_triggered=True,
        triggered_by=triggered_by,
        retry_count=int(failed.retry_count or 0) + 1,
        retry_of_id=failed.id,
    )


def cancel_execution(db: Session, execution_id, *, canceled_by: str | None = None) -> ScheduledJobExecution:
    execution = get_execution(db, execution_id)
    result = db.execute(
        sa.update(ScheduledJobExecution)
        .where(
            ScheduledJobExecution.id == execution.id,
            ScheduledJobExecution.status == "RUNNING",
            ScheduledJobExecution.canceled.is_(False),
        )
        .values(canceled=True, canceled_by=canceled_by)
    )
    if result.rowcount != 1:
        db.refresh(execution)
        if execution.status != "RUNNING":
            raise InvalidStateTransition(
                f"Only RUNNING executions can be canceled, execution {execution.id} is {execution.status}",
                execution_id=str(execution.id),
            )
        # already flagged
        return execution
    db.refresh(execution)
    logger.info("job.execution.cancel_requested", execution_id=str(execution.id), job_name=execution.job_name, canceled_by=canceled_by)
    return execution


# -- monitoring ---------------------------------------------------------------


def recent_executions(db: Session, *, hours: int = 24, job_name: str | None = None, limit: int = 100) -> list[ScheduledJobExecution]:
    since = now_utc() - timedelta(hours=hours)
    q = sa.select(ScheduledJobExecution).where(ScheduledJobExecution.start_time >= since)
    if job_name:
        q = q.where(ScheduledJobExecution.job_name == job_name)
    q = q.order_by(ScheduledJobExecution.start_time.desc()).limit(limit)
    return list(db.execute(q).scalars())


def executions_for_job(db: Session, job_name: str, *, limit: int = 50) -> list[ScheduledJobExecution]:
    get_job_definition(job_name)
    return list(
        db.execute(
            sa.select(ScheduledJobExecution)
            .where(ScheduledJobExecution.job_name == job_name)
            .order_by(ScheduledJobExecution.start_time.desc())
            .limit(limit)
        ).scalars()
    )


def running_executions(db: Session) -> list[ScheduledJobExecution]:
    return list(
        db.execute(
            sa.select(ScheduledJobExecution)
            .where(ScheduledJobExecution.status == "RUNNING")
            .order_by(ScheduledJobExecution.start_time.asc())
        ).scalars()
    )


def failed_executions(db: Session, *, max_retries: int = MAX_AUTOMATIC_RETRIES, limit: int = 100) -> list[ScheduledJobExecution]:
    """FAILED runs that have not been retried ``max_retries`` times yet."""
    return list(
        db.execute(
            sa.select(ScheduledJobExecution)
            .where(ScheduledJobExecution.status == "FAILED", ScheduledJobExecution.retry_count < max_retries)
            .order_by(ScheduledJobExecution.start_time.desc())
            .limit(limit)
        ).scalars()
    )


def job_stats(db: Session, *, days: int = 7) -> list[dict]:
    since = now_utc() - timedelta(days=days)
    rows = db.execute(
        sa.select(
            ScheduledJobExecution.job_name,
            ScheduledJobExecution.status,
            sa.func.count(),
            sa.func.avg(ScheduledJobExecution.duration_ms),
            sa.func.max(ScheduledJobExecution.start_time),
        )
        .where(ScheduledJobExecution.start_time >= since)
        .group_by(ScheduledJobExecution.job_name, ScheduledJobExecution.status)
    ).all()

    out: dict[str, dict] = {
        name: {
            "job_name": name,
            "description": definition.description,
            "cron": definition.cron,
            "total": 0,
            "success": 0,
            "failed": 0,
            "canceled": 0,
            "running": 0,
            "avg_duration_ms": None,
            "last_run_at": None,
        }
        for name, definition in JOB_REGISTRY.items()
    }
    durations: dict[str, list[tuple[float, int]]] = {}
    for job_name, status, count, avg_ms, last_start in rows:
        entry = out.setdefault(
            job_name,
            {
                "job_name": job_name,
                "description": None,
                "cron": None,
                "total": 0,
                "success": 0,
                "failed": 0,
                "canceled": 0,
                "running": 0,
                "avg_duration_ms": None,
                "last_run_at": None,
            },
        )
        entry["total"] += int(count)
        entry[str(status).lower()] = entry.get(str(status).lower(), 0) + int(count)
        if avg_ms is not None:
            durations.setdefault(job_name, []).append((float(avg_ms), int(count)))
        last_start = as_utc(last_start)
        if last_start is not None and (entry["last_run_at"] is None or last_start > entry["last_run_at"]):
            entry["last_run_at"] = last_start

    for job_name, parts in durations.items():
        weight = sum(n for _, n in parts)
        if weight:
            out[job_name]["avg_duration_ms"] = int(sum(avg * n for avg, n in parts) / weight)
    return sorted(out.values(), key=lambda e: e["job_name"])
