"""API router for submission intake and admin corrections."""

import logging

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.background_tasks import start_normalization_job, start_rank_job
from app.config import settings
from app.dependencies.database import DBSessionDep
from app.models import Exam, ExamStatus, JobType, Shift, Submission
from app.schemas.submission import (
    PostSubmissionResponse,
    RawScoreCorrection,
    SignificanceResponse,
    SubmissionCreate,
    SubmissionResponse,
)
from app.services import job_service
from app.services.exceptions import (
    BatchAlreadyRunningError,
    ExamClosedError,
    ExamNotFoundError,
    MalformedSubmissionError,
    SubmissionNotFoundError,
)
from app.services.incremental_normalization import correct_raw_score, delete_submission, handle_post_submission
from app.utils.score_utils import (
    calculate_raw_score,
    calculate_section_performance,
    get_strengths_weaknesses,
    summarize_responses,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/submissions", tags=["submissions"])


async def _schedule_job(session: AsyncSession, exam_id: int, job_type: JobType) -> int | None:
    """Record and start a background job unless one is already pending or running."""
    try:
        job = await job_service.create_job(session, job_type, exam_id, triggered_by="submission")
    except BatchAlreadyRunningError as e:
        logger.info(f"Not scheduling {job_type.value} for exam {exam_id}: {e}")
        return None

    if job_type == JobType.NORMALIZATION:
        start_normalization_job(exam_id, job.id)
    else:
        start_rank_job(exam_id, job.id)
    return job.id


@router.post("", response_model=PostSubmissionResponse, status_code=status.HTTP_201_CREATED)
async def create_submission(submission_data: SubmissionCreate, session: DBSessionDep) -> PostSubmissionResponse:
    """
    Store a parsed response sheet, score it and run the incremental normalization path.

    Schedules a full normalization job when drift since the last full pass is
    significant, or a rank job when other candidates' ranks are due a refresh.
    """
    exam = await session.get(Exam, submission_data.exam_id)
    if not exam:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exam not found")
    if exam.status == ExamStatus.CLOSED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Exam is closed")

    shift = await session.get(Shift, submission_data.shift_id)
    if not shift or shift.exam_id != exam.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Shift does not belong to this exam")

    existing_stmt = select(Submission.id).where(
        Submission.exam_id == exam.id, Submission.roll_number == submission_data.roll_number
    )
    if (await session.execute(existing_stmt)).scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Roll number {submission_data.roll_number} already submitted for this exam",
        )

    responses = submission_data.responses
    raw_score = calculate_raw_score(responses, exam.default_positive, exam.default_negative)
    submission = Submission(
        exam_id=exam.id,
        shift_id=shift.id,
        roll_number=submission_data.roll_number,
        name=submission_data.name,
        dob=submission_data.dob,
        category=submission_data.category,
        gender=submission_data.gender,
        state=submission_data.state,
        responses=[r.model_dump() for r in responses],
        section_performance=calculate_section_performance(responses, exam.default_positive, exam.default_negative),
        raw_score=raw_score,
        **summarize_responses(responses),
    )
    session.add(submission)
    await session.commit()
    await session.refresh(submission)

    try:
        result = await handle_post_submission(session, submission.id, exam.id, shift.id, raw_score)
    except MalformedSubmissionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    scheduled_job_id = None
    if settings.auto_schedule_batch:
        if result.significance.is_significant:
            scheduled_job_id = await _schedule_job(session, exam.id, JobType.NORMALIZATION)
        elif result.rank_refresh_due:
            scheduled_job_id = await _schedule_job(session, exam.id, JobType.RANK_CALCULATION)

    await session.refresh(submission)
    analysis = get_strengths_weaknesses(responses)
    return PostSubmissionResponse(
        submission=SubmissionResponse.model_validate(submission),
        normalized_score=result.normalized_score,
        ranks_recalculated=result.ranks_recalculated,
        rank_refresh_due=result.rank_refresh_due,
        significance=SignificanceResponse(**result.significance.to_dict()),
        scheduled_job_id=scheduled_job_id,
        strengths=analysis["strengths"],
        weaknesses=analysis["weaknesses"],
    )


@router.get("/{submission_id}", response_model=SubmissionResponse)
async def get_submission(submission_id: int, session: DBSessionDep) -> SubmissionResponse:
    submission = await session.get(Submission, submission_id)
    if not submission:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    return SubmissionResponse.model_validate(submission)


@router.patch("/{submission_id}/raw-score", response_model=SubmissionResponse)
async def update_raw_score(
    submission_id: int, correction: RawScoreCorrection, session: DBSessionDep
) -> SubmissionResponse:
    """Correct a submission's raw score and refresh its normalized score and ranks."""
    try:
        submission = await correct_raw_score(session, submission_id, correction.raw_score)
    except (SubmissionNotFoundError, ExamNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ExamClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if correction.reason:
        logger.info(f"Raw score correction reason for submission {submission_id}: {correction.reason}")
    return SubmissionResponse.model_validate(submission)


@router.delete("/{submission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_submission(submission_id: int, session: DBSessionDep) -> None:
    try:
        await delete_submission(session, submission_id)
    except (SubmissionNotFoundError, ExamNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ExamClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
