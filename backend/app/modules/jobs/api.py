from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import require_operation
from app.core.permissions import Operator
from app.db.session import get_db
from app.schemas.jobs import JobDefinitionOut, JobExecutionDetailOut, JobExecutionOut, JobStatsOut
from app.services.job_execution import (
    cancel_execution,
    executions_for_job,
    failed_executions,
    get_execution,
    job_stats,
    recent_executions,
    retry_execution,
    running_executions,
    start_execution,
)
from app.services.scheduled_jobs import JOB_REGISTRY
from app.workers.tasks import dispatch_execution

router = APIRouter()


@router.get("", response_model=list[JobDefinitionOut])
def list_jobs(operator: Operator = Depends(require_operation("jobs.list"))):
    return [JobDefinitionOut(name=d.name, description=d.description, cron=d.cron) for d in JOB_REGISTRY.values()]


@router.get("/stats", response_model=list[JobStatsOut])
def jobs_stats(
    days: int = Query(default=7, ge=1, le=90),
    operator: Operator = Depends(require_operation("jobs.stats")),
    db: Session = Depends(get_db),
):
    return [JobStatsOut(**row) for row in job_stats(db, days=days)]


@router.get("/executions/recent", response_model=list[JobExecutionOut])
def recent(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    job_name: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    operator: Operator = Depends(require_operation("jobs.list")),
    db: Session = Depends(get_db),
):
    return recent_executions(db, hours=hours, job_name=job_name, limit=limit)


@router.get("/executions/running", response_model=list[JobExecutionOut])
def running(operator: Operator = Depends(require_operation("jobs.list")), db: Session = Depends(get_db)):
    return running_executions(db)


@router.get("/executions/failed", response_model=list[JobExecutionOut])
def failed(operator: Operator = Depends(require_operation("jobs.list")), db: Session = Depends(get_db)):
    return failed_executions(db)


@router.get("/executions/by-job/{job_name}", response_model=list[JobExecutionOut])
def by_job(
    job_name: str,
    limit: int = Query(default=50, ge=1, le=500),
    operator: Operator = Depends(require_operation("jobs.list")),
    db: Session = Depends(get_db),
):
    return executions_for_job(db, job_name, limit=limit)


@router.get("/executions/{execution_id}", response_model=JobExecutionDetailOut)
def execution_detail(
    execution_id: UUID,
    operator: Operator = Depends(require_operation("jobs.list")),
    db: Session = Depends(get_db),
):
    return get_execution(db, execution_id)


@router.post("/{job_name}/trigger", response_model=JobExecutionOut)
def trigger(job_name: str, operator: Operator = Depends(require_operation("jobs.trigger")), db: Session = Depends(get_db)):
    execution = start_execution(db, job_name=job_name, manually_triggered=True, triggered_by=operator.user_id)
    dispatch_execution(db, execution.id)
    db.refresh(execution)
    return execution


@router.post("/executions/{execution_id}/retry", response_model=JobExecutionOut)
def retry(execution_id: UUID, operator: Operator = Depends(require_operation("jobs.retry")), db: Session = Depends(get_db)):
    execution = retry_execution(db, execution_id, triggered_by=operator.user_id)
    dispatch_execution(db, execution.id)
    db.refresh(execution)
    return execution


@router.post("/executions/{execution_id}/cancel", response_model=JobExecutionOut)
def cancel(execution_id: UUID, operator: Operator = Depends(require_operation("jobs.cancel")), db: Session = Depends(get_db)):
    execution = cancel_execution(db, execution_id, canceled_by=operator.user_id)
    db.commit()
    return execution
