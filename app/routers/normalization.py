"""API router for normalization status, configuration and batch triggers."""

import logging

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.background_tasks import start_normalization_job, start_rank_job
from app.dependencies.database import DBSessionDep
from app.models import Exam, ExamStatus, JobType
from app.schemas.job import JobRunResponse
from app.schemas.normalization import (
    BatchProcessingResponse,
    ExamNormalizationStatus,
    FinalizeExamResponse,
    ForceRenormalizationResponse,
    FormulaOption,
    NormalizationStatusResponse,
    ThresholdUpdate,
)
from app.services import job_service
from app.services.batch_normalization import (
    finalize_exam,
    force_renormalization,
    run_batch_processing,
    update_threshold,
)
from app.services.exceptions import BatchAlreadyRunningError, ExamClosedError, ExamNotFoundError
from app.services.incremental_normalization import effective_method
from app.services.significance import check_significance, recommendation
from app.utils.normalization_formulas import get_available_formulas, get_method_label

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/normalization", tags=["normalization"])
ranks_router = APIRouter(prefix="/api/v1/ranks", tags=["ranks"])


async def _exam_status(session: AsyncSession, exam: Exam) -> ExamNormalizationStatus:
    report = await check_significance(session, exam.id)
    method = effective_method(exam)
    return ExamNormalizationStatus(
        exam_id=exam.id,
        exam_name=exam.name,
        normalization_method=method,
        method_label=get_method_label(method),
        has_normalization=exam.has_normalization,
        total_submissions=report.total_count,
        subs_at_last_normalization=report.subs_at_last_normalization,
        new_since_last_normalization=report.new_count,
        percent_new=report.percent_new,
        threshold=report.threshold,
        needs_renormalization=report.is_significant,
        recommendation=recommendation(report),
        last_normalized_at=report.last_normalized_at,
        last_ranked_at=exam.last_ranked_at,
    )


async def _get_exam(session: AsyncSession, exam_id: int) -> Exam:
    exam = await session.get(Exam, exam_id)
    if not exam:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exam not found")
    return exam


async def _start_job(session: AsyncSession, exam_id: int, job_type: JobType, triggered_by: str) -> JobRunResponse:
    exam = await _get_exam(session, exam_id)
    if exam.status == ExamStatus.CLOSED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Exam is closed")

    try:
        job = await job_service.create_job(session, job_type, exam_id, triggered_by=triggered_by)
    except BatchAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if job_type == JobType.NORMALIZATION:
        start_normalization_job(exam_id, job.id)
    else:
        start_rank_job(exam_id, job.id)
    return JobRunResponse.model_validate(job)


@router.get("/methods", response_model=list[FormulaOption])
async def list_methods() -> list[FormulaOption]:
    """Available normalization formulas for exam configuration."""
    return [FormulaOption(**option) for option in get_available_formulas()]


@router.get("/status", response_model=NormalizationStatusResponse)
async def get_normalization_status(
    session: DBSessionDep,
    exam_id: int | None = Query(None, description="Limit to one exam"),
) -> NormalizationStatusResponse:
    """Drift since the last full normalization for one exam, or every open exam."""
    if exam_id is not None:
        exams = [await _get_exam(session, exam_id)]
    else:
        stmt = select(Exam).where(Exam.status != ExamStatus.CLOSED).order_by(Exam.id)
        exams = list((await session.execute(stmt)).scalars().all())

    statuses = [await _exam_status(session, exam) for exam in exams]
    return NormalizationStatusResponse(exams=statuses, total=len(statuses))


@router.post("/{exam_id}/force", response_model=ForceRenormalizationResponse)
async def force_exam_renormalization(exam_id: int, session: DBSessionDep) -> ForceRenormalizationResponse:
    """Reset drift tracking so the next batch pass renormalizes the exam."""
    try:
        await force_renormalization(session, exam_id)
    except ExamNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ExamClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    exam = await _get_exam(session, exam_id)
    return ForceRenormalizationResponse(
        exam_id=exam_id,
        message="Re-normalization flagged. The next batch pass will renormalize this exam.",
        status=await _exam_status(session, exam),
    )


@router.patch("/{exam_id}/threshold", response_model=ExamNormalizationStatus)
async def update_exam_threshold(
    exam_id: int, threshold_update: ThresholdUpdate, session: DBSessionDep
) -> ExamNormalizationStatus:
    try:
        await update_threshold(session, exam_id, threshold_update.threshold)
    except ExamNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    exam = await _get_exam(session, exam_id)
    return await _exam_status(session, exam)


@router.post("/{exam_id}/run", response_model=JobRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_exam_normalization(exam_id: int, session: DBSessionDep) -> JobRunResponse:
    """Start a full normalization pass (ranks and cutoffs included) in the background."""
    return await _start_job(session, exam_id, JobType.NORMALIZATION, triggered_by="admin")


@router.post("/run-all", response_model=BatchProcessingResponse)
async def run_all_normalization(session: DBSessionDep) -> BatchProcessingResponse:
    """Run a full normalization pass for every active exam and wait for it."""
    result = await run_batch_processing(session, triggered_by="admin")
    return BatchProcessingResponse(**result)


@router.post("/{exam_id}/finalize", response_model=FinalizeExamResponse)
async def finalize_exam_results(exam_id: int, session: DBSessionDep) -> FinalizeExamResponse:
    """Close the exam; its submissions become final and batch passes are rejected."""
    try:
        count = await finalize_exam(session, exam_id)
    except ExamNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (ExamClosedError, BatchAlreadyRunningError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return FinalizeExamResponse(
        exam_id=exam_id, finalized_submissions=count, message=f"Finalized {count} submission(s)"
    )


@ranks_router.post("/{exam_id}/run", response_model=JobRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_exam_ranks(exam_id: int, session: DBSessionDep) -> JobRunResponse:
    """Start a full rank pass in the background."""
    return await _start_job(session, exam_id, JobType.RANK_CALCULATION, triggered_by="admin")
