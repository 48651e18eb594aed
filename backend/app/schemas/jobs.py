from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class JobExecutionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_name: str
    description: str | None = None
    status: Literal["RUNNING", "SUCCESS", "FAILED", "CANCELED"]
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    items_processed: int
    items_failed: int
    error_message: str | None = None
    retry_count: int
    retry_of_id: UUID | None = None
    manually_triggered: bool
    triggered_by: str | None = None
    canceled: bool
    canceled_by: str | None = None


class JobExecutionDetailOut(JobExecutionOut):
    stack_trace: str | None = None


class JobDefinitionOut(BaseModel):
    name: str
    description: str
    cron: str


class JobStatsOut(BaseModel):
    job_name: str
    description: str | None = None
    cron: str | None = None
    total: int
    success: int
    failed: int
    canceled: int
    running: int
    avg_duration_ms: int | None = None
    last_run_at: datetime | None = None
