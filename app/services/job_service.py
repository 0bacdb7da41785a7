"""Service for tracking normalization and rank calculation job runs."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import JobRun, JobStatus, JobType
from app.services.exceptions import BatchAlreadyRunningError, JobNotFoundError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


async def get_job(session: AsyncSession, job_id: int) -> JobRun:
    job = await session.get(JobRun, job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


async def list_jobs(
    session: AsyncSession,
    exam_id: int | None = None,
    job_type: JobType | None = None,
    status: JobStatus | None = None,
    skip: int = 0,
    limit: int = 50,
) -> list[JobRun]:
    stmt = select(JobRun)
    if exam_id is not None:
        stmt = stmt.where(JobRun.exam_id == exam_id)
    if job_type is not None:
        stmt = stmt.where(JobRun.job_type == job_type)
    if status is not None:
        stmt = stmt.where(JobRun.status == status)
    stmt = stmt.order_by(JobRun.created_at.desc(), JobRun.id.desc()).offset(skip).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_active_job(session: AsyncSession, exam_id: int | None, job_type: JobType) -> JobRun | None:
    """Return a pending or running job of this type for the exam, if any."""
    stmt = (
        select(JobRun)
        .where(
            JobRun.exam_id == exam_id,
            JobRun.job_type == job_type,
            JobRun.status.in_(ACTIVE_STATUSES),
        )
        .order_by(JobRun.id.asc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_job(
    session: AsyncSession,
    job_type: JobType,
    exam_id: int | None,
    triggered_by: str = "system",
) -> JobRun:
    """
    Record a pending job for an exam.

    Raises:
        BatchAlreadyRunningError: If a job of the same type is already pending or running
    """
    existing = await find_active_job(session, exam_id, job_type)
    if existing is not None:
        raise BatchAlreadyRunningError(exam_id, existing.id)

    job = JobRun(job_type=job_type, exam_id=exam_id, status=JobStatus.PENDING, triggered_by=triggered_by)
    session.add(job)
    await session.commit()
    await session.refresh(job)
    return job


async def start_job(session: AsyncSession, job: JobRun) -> JobRun:
    """
    Move a pending job to running. Jobs in any other status are returned as-is.

    The status only changes while the row is still pending, so a job
    cancelled in another session is never started. The partial unique index
    on running (exam_id, job_type) makes this the mutual-exclusion point
    between concurrent batch passes.

    Raises:
        BatchAlreadyRunningError: If another job of the same type is running for the exam
    """
    if job.status != JobStatus.PENDING:
        # Cancelled before it started, or already run
        return job

    job_id, exam_id = job.id, job.exam_id
    try:
        result = await session.execute(
            update(JobRun)
            .where(JobRun.id == job_id, JobRun.status == JobStatus.PENDING)
            .values(status=JobStatus.RUNNING, started_at=datetime.utcnow(), error_message=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Job {job_id} not started: another job is running for exam {exam_id}")
        raise BatchAlreadyRunningError(exam_id, job_id)
    await session.refresh(job)
    if result.rowcount == 0:
        logger.info(f"Job {job_id} is {job.status.value}, not starting it")
        return job
    logger.info(f"Started {job.job_type.value} job {job.id} for exam {exam_id}")
    return job


async def claim_job(
    session: AsyncSession,
    job_type: JobType,
    exam_id: int | None,
    job_id: int | None = None,
    triggered_by: str = "system",
) -> JobRun:
    """Load the given job (or create one) and start it."""
    if job_id is None:
        job = JobRun(job_type=job_type, exam_id=exam_id, status=JobStatus.PENDING, triggered_by=triggered_by)
        session.add(job)
        await session.flush()
    else:
        job = await get_job(session, job_id)
    return await start_job(session, job)


async def update_progress(session: AsyncSession, job: JobRun, processed: int, total: int | None) -> None:
    job.records_processed = processed
    job.total_records = total
    if total:
        job.progress_percent = min(100, int(processed * 100 / total))
    await session.commit()


async def is_job_cancelled(session: AsyncSession, job: JobRun) -> bool:
    """Re-read the job so a cancellation requested from another session is seen."""
    await session.refresh(job)
    return job.cancel_requested or job.status == JobStatus.CANCELLED


async def complete_job(
    session: AsyncSession, job: JobRun, result: dict[str, Any], message: str | None = None
) -> JobRun:
    """
    Store the result and the final status.

    The job row is re-read first. A job whose cancellation was requested ends
    cancelled even when the request arrived after the last cancellation check.
    """
    await session.refresh(job)
    if result.get("cancelled") or job.cancel_requested or job.status == JobStatus.CANCELLED:
        job.status = JobStatus.CANCELLED
    else:
        job.status = JobStatus.SUCCESS
        job.progress_percent = 100
    job.result = result
    job.message = message
    job.completed_at = datetime.utcnow()
    await session.commit()
    await session.refresh(job)
    logger.info(f"Job {job.id} finished with status {job.status.value}")
    return job


async def fail_job(session: AsyncSession, job_id: int, error: str) -> None:
    """Mark a job failed so operators can retry it."""
    try:
        job = await session.get(JobRun, job_id)
        if job is None:
            return
        job.status = JobStatus.FAILED
        job.error_message = error
        job.completed_at = datetime.utcnow()
        await session.commit()
    except Exception as update_error:
        logger.error(f"Error updating job {job_id} status: {update_error}", exc_info=True)
        await session.rollback()


async def cancel_job(session: AsyncSession, job_id: int) -> JobRun:
    """
    Cancel a pending job, or request cancellation of a running one.

    A pending job is cancelled at once. A running job stays running with
    cancel_requested set, so it keeps blocking other passes for its exam
    until the pass notices between chunks and ends as cancelled. Work
    already written is kept. Finished jobs are returned unchanged.
    """
    job = await get_job(session, job_id)
    if job.status == JobStatus.PENDING:
        result = await session.execute(
            update(JobRun)
            .where(JobRun.id == job_id, JobRun.status == JobStatus.PENDING)
            .values(status=JobStatus.CANCELLED, message="Cancelled before start", completed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await session.refresh(job)
        if result.rowcount:
            logger.info(f"Cancelled pending job {job_id}")
            return job

    if job.status == JobStatus.RUNNING:
        job.cancel_requested = True
        job.message = "Cancellation requested"
        await session.commit()
        await session.refresh(job)
        logger.info(f"Cancellation requested for running job {job_id}")
    return job
