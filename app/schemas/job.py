from datetime import datetime
from typing import Any

from pydantic import BaseModel

from app.models import JobStatus, JobType


class JobRunResponse(BaseModel):
    """Schema for job run response."""

    id: int
    job_type: JobType
    exam_id: int | None
    status: JobStatus
    triggered_by: str
    total_records: int | None
    records_processed: int
    progress_percent: int
    cancel_requested: bool
    message: str | None
    error_message: str | None
    result: dict[str, Any] | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobRunListResponse(BaseModel):
    items: list[JobRunResponse]
    total: int
