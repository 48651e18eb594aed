import sys

from app.core.errors import JobAlreadyRunning
from app.core.logging import setup_logging
from app.db.session import SessionLocal
from app.services.job_execution import run_job
from app.services.scheduled_jobs import JOB_REGISTRY


def main():
    if len(sys.argv) != 2 or sys.argv[1] not in JOB_REGISTRY:
        print(f"usage: python -m scripts.run_job <{'|'.join(sorted(JOB_REGISTRY))}>")
        raise SystemExit(2)

    setup_logging()
    db = SessionLocal()
    try:
        execution = run_job(db, sys.argv[1], manually_triggered=True, triggered_by="cli")
        print(
            f"ok: {execution.job_name} {execution.status} "
            f"(processed={execution.items_processed}, failed={execution.items_failed}, duration_ms={execution.duration_ms})"
        )
        if execution.status == "FAILED":
            raise SystemExit(1)
    except JobAlreadyRunning as exc:
        print(f"skip: {exc.message}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
