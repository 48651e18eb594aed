from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import JobAlreadyRunning
from app.core.logging import get_logger
from app.db.session import SessionLocal
from app.services.job_execution import execute_execution, fail_execution, run_job
from app.workers.celery_app import celery_app

logger = get_logger(__name__)


def _summary(execution) -> dict:
    return {
        "execution_id": str(execution.id),
        "job_name": execution.job_name,
        "status": execution.status,
        "items_processed": execution.items_processed,
        "items_failed": execution.items_failed,
        "duration_ms": execution.duration_ms,
    }


@celery_app.task(name="app.workers.tasks.run_scheduled_job")
def run_scheduled_job(job_name: str) -> dict:
    db = SessionLocal()
    try:
        execution = run_job(db, job_name)
        return _summary(execution)
    except JobAlreadyRunning as exc:
        # A tick landing on a live run is skipped, never queued.
        logger.warning("job.tick_skipped", job_name=job_name, reason=exc.message)
        return {"job_name": job_name, "status": "SKIPPED"}
    finally:
        db.close()


@celery_app.task(name="app.workers.tasks.execute_job_execution")
def execute_job_execution(execution_id: str) -> dict:
    db = SessionLocal()
    try:
        return _summary(execute_execution(db, execution_id))
    finally:
        db.close()


def dispatch_execution(db: Session, execution_id) -> None:
    """Hand a started execution to a worker, or run it here in inline mode."""
    if settings.JOB_DISPATCH_MODE == "inline":
        execute_execution(db, execution_id)
        return
    try:
        execute_job_execution.delay(str(execution_id))
    except Exception as exc:
        # No worker will ever pick this row up; close it so the job is not blocked.
        logger.exception("job.execution.dispatch_failed", execution_id=str(execution_id))
        fail_execution(db, execution_id, reason=f"Dispatch failed: {exc}")
        return
    logger.info("job.execution.dispatched", execution_id=str(execution_id))
