from typing import Any

from celery import Celery, signals
from celery.schedules import crontab

from app.core.config import settings
from app.core.logging import setup_logging
from app.services.scheduled_jobs import JOB_REGISTRY

RUN_SCHEDULED_JOB = "app.workers.tasks.run_scheduled_job"

celery_app = Celery(
    "church_billing",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,
    task_track_started=True,
    # Jobs poll their own cancel flag; the worker never kills them.
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)


def cron_schedule(expr: str) -> crontab:
    minute, hour, day_of_month, month_of_year, day_of_week = expr.split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


@signals.setup_logging.connect
def configure_worker_logging(**kwargs: Any) -> None:
    setup_logging()


@celery_app.on_after_finalize.connect
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """One beat entry per registered job; the task itself enforces one run per name."""
    for name, definition in JOB_REGISTRY.items():
        sender.add_periodic_task(
            cron_schedule(definition.cron),
            sender.signature(RUN_SCHEDULED_JOB, args=(name,)),
            name=f"job-{name}",
        )
