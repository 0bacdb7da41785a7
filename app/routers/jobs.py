"""API router for normalization and rank job runs."""

import logging

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import func, select

from app.dependencies.database import DBSessionDep
from app.models import JobRun, JobStatus, JobType
from app.schemas.job import JobRunListResponse, JobRunResponse
from app.services import job_service
from app.services.exceptions import JobNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.get("", response_model=JobRunListResponse)
async def list_jobs(
    session: DBSessionDep,
    exam_id: int | None = Query(None, description="Filter by exam ID"),
    job_type: JobType | None = Query(None, description="Filter by job type"),
    status_filter: JobStatus | None = Query(None, alias="status", description="Filter by job status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
) -> JobRunListResponse:
    jobs = await job_service.list_jobs(session, exam_id, job_type, status_filter, skip, limit)

    count_stmt = select(func.count(JobRun.id))
    if exam_id is not None:
        count_stmt = count_stmt.where(JobRun.exam_id == exam_id)
    if job_type is not None:
        count_stmt = count_stmt.where(JobRun.job_type == job_type)
    if status_filter is not None:
        count_stmt = count_stmt.where(JobRun.status == status_filter)
    total = (await session.execute(count_stmt)).scalar_one()

    return JobRunListResponse(items=[JobRunResponse.model_validate(job) for job in jobs], total=total)


@router.get("/{job_id}", response_model=JobRunResponse)
async def get_job(job_id: int, session: DBSessionDep) -> JobRunResponse:
    try:
        job = await job_service.get_job(session, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobRunResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobRunResponse)
async def cancel_job(job_id: int, session: DBSessionDep) -> JobRunResponse:
    """
    Cancel a pending job, or request cancellation of a running one.

    A running job answers with cancel_requested set and stays running until
    the pass stops after its current chunk. Submissions already renormalized
    keep their new scores.
    """
    try:
        job = await job_service.cancel_job(session, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if job.status in (JobStatus.SUCCESS, JobStatus.FAILED):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} already finished with status {job.status.value}",
        )
    return JobRunResponse.model_validate(job)
