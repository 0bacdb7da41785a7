"""Service for normalizing single submissions against cached statistics."""

import logging
from dataclasses import dataclass

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import Exam, ExamStatus, NormalizationMethod, ProcessingStatus, Shift, Submission
from app.services.exceptions import (
    ExamClosedError,
    ExamNotFoundError,
    MalformedSubmissionError,
    SubmissionNotFoundError,
)
from app.services.rank_calculator import update_submission_ranks
from app.services.significance import SignificanceReport, check_significance
from app.services.statistics_aggregator import include_in_shift_aggregate, refresh_shift_stats
from app.utils.normalization_formulas import NormalizationParams, get_normalized_score, resolve_method

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostSubmissionResult:
    normalized_score: float | None
    ranks_recalculated: bool
    significance: SignificanceReport
    rank_refresh_due: bool


def effective_method(exam: Exam) -> str:
    """Formula key for an exam; exams without normalization rank on raw scores."""
    if not exam.has_normalization:
        return NormalizationMethod.RAW.value
    return resolve_method(exam.normalization_method or settings.default_normalization_method)


def build_params(
    exam: Exam,
    raw_score: float,
    shift_mean: float | None,
    shift_std_dev: float | None,
    total_in_shift: int,
    rank_in_shift: int,
) -> NormalizationParams:
    return NormalizationParams(
        raw_score=raw_score,
        shift_mean=shift_mean or 0.0,
        shift_std_dev=shift_std_dev or 0.0,
        global_mean=exam.global_mean or 0.0,
        global_std_dev=exam.global_std_dev or 0.0,
        max_marks=exam.total_marks or 0.0,
        total_in_shift=total_in_shift,
        rank_in_shift=rank_in_shift,
        global_distribution=exam.global_distribution or None,
        config=exam.normalization_config or None,
    )


async def shift_position(session: AsyncSession, exam_id: int, shift_id: int, raw_score: float) -> tuple[int, int]:
    """(candidates in shift, rank of raw_score in shift) with competition ranking."""
    stmt = select(
        func.count(Submission.id),
        func.coalesce(func.sum(case((Submission.raw_score > raw_score, 1), else_=0)), 0),
    ).where(Submission.shift_id == shift_id, Submission.exam_id == exam_id)
    total, greater = (await session.execute(stmt)).one()
    return int(total), int(greater) + 1


async def _load_context(
    session: AsyncSession, submission_id: int, exam_id: int, shift_id: int
) -> tuple[Exam, Shift, Submission]:
    exam = await session.get(Exam, exam_id)
    if exam is None:
        raise ExamNotFoundError(f"Exam {exam_id} not found")
    submission = await session.get(Submission, submission_id)
    if submission is None:
        raise SubmissionNotFoundError(f"Submission {submission_id} not found")
    shift = await session.get(Shift, shift_id)
    if shift is None or shift.exam_id != exam_id or submission.exam_id != exam_id:
        raise MalformedSubmissionError(f"Submission {submission_id} does not belong to shift {shift_id} of exam {exam_id}")
    return exam, shift, submission


async def normalize_new_submission(
    session: AsyncSession, submission_id: int, exam_id: int, shift_id: int, raw_score: float
) -> float | None:
    """
    Normalize one newly stored submission without touching any other row.

    The shift's running aggregate is updated to include the new score, but
    the score itself is normalized against the shift's cached statistics from
    before it arrived and the exam's cached global statistics. Global
    statistics are left to the batch pass.

    Returns:
        The normalized score, or None when the exam has no baseline full
        normalization yet
    """
    exam, shift, submission = await _load_context(session, submission_id, exam_id, shift_id)
    shift_mean, shift_std_dev = shift.avg_raw_score, shift.std_dev

    await include_in_shift_aggregate(session, shift_id, raw_score)
    await session.refresh(shift)

    if exam.last_normalized_at is None:
        await session.commit()
        logger.info(f"Exam {exam_id} has no baseline normalization; submission {submission_id} left raw")
        return None

    total_in_shift, rank_in_shift = await shift_position(session, exam_id, shift_id, raw_score)
    params = build_params(exam, raw_score, shift_mean, shift_std_dev, total_in_shift, rank_in_shift)
    normalized = get_normalized_score(effective_method(exam), params)

    if submission.processing_status != ProcessingStatus.FINALIZED:
        submission.normalized_score = normalized
        submission.processing_status = ProcessingStatus.INCREMENTALLY_NORMALIZED
    await session.commit()
    return normalized


def rank_refresh_due(exam: Exam, total_count: int) -> bool:
    """Whether other submissions' ranks have lagged long enough to need a full pass."""
    if exam.last_ranked_at is None:
        return True
    return total_count - (exam.subs_at_last_rank or 0) >= settings.rank_refresh_every


async def handle_post_submission(
    session: AsyncSession, submission_id: int, exam_id: int, shift_id: int, raw_score: float
) -> PostSubmissionResult:
    """
    Low-latency path run right after a submission is stored.

    Normalizes the submission, refreshes its own ranks in every scope and
    reports whether a full batch pass is warranted.
    """
    normalized = await normalize_new_submission(session, submission_id, exam_id, shift_id, raw_score)

    submission = await session.get(Submission, submission_id)
    await update_submission_ranks(session, submission)
    await session.commit()

    significance = await check_significance(session, exam_id)
    exam = await session.get(Exam, exam_id)
    due = significance.is_significant or rank_refresh_due(exam, significance.total_count)

    if significance.is_significant:
        logger.info(
            f"Exam {exam_id}: {significance.percent_new}% new submissions since last normalization "
            f"(threshold {significance.threshold}%), full pass recommended"
        )

    return PostSubmissionResult(
        normalized_score=normalized,
        ranks_recalculated=True,
        significance=significance,
        rank_refresh_due=due,
    )


async def _load_editable_submission(session: AsyncSession, submission_id: int) -> tuple[Submission, Exam]:
    submission = await session.get(Submission, submission_id)
    if submission is None:
        raise SubmissionNotFoundError(f"Submission {submission_id} not found")
    exam = await session.get(Exam, submission.exam_id)
    if exam is None:
        raise ExamNotFoundError(f"Exam {submission.exam_id} not found")
    if exam.status == ExamStatus.CLOSED:
        raise ExamClosedError(f"Exam {exam.id} is closed; submission {submission_id} cannot change")
    return submission, exam


async def correct_raw_score(session: AsyncSession, submission_id: int, raw_score: float) -> Submission:
    """
    Apply an admin raw score correction.

    Refreshes the shift aggregate, renormalizes this record against cached
    statistics and refreshes its ranks. Other records wait for the next batch.
    """
    submission, exam = await _load_editable_submission(session, submission_id)
    previous = submission.raw_score
    submission.raw_score = raw_score
    await session.flush()

    stats = await refresh_shift_stats(session, submission.shift_id)

    if exam.last_normalized_at is None:
        submission.normalized_score = None
        submission.processing_status = ProcessingStatus.RAW_ONLY
    else:
        total_in_shift, rank_in_shift = await shift_position(session, exam.id, submission.shift_id, raw_score)
        params = build_params(exam, raw_score, stats.mean, stats.std_dev, total_in_shift, rank_in_shift)
        submission.normalized_score = get_normalized_score(effective_method(exam), params)
        submission.processing_status = ProcessingStatus.INCREMENTALLY_NORMALIZED

    await update_submission_ranks(session, submission)
    await session.commit()
    await session.refresh(submission)
    logger.info(f"Corrected raw score of submission {submission_id}: {previous} -> {raw_score}")
    return submission


async def delete_submission(session: AsyncSession, submission_id: int) -> None:
    """Delete a submission and refresh its shift's aggregate."""
    submission, exam = await _load_editable_submission(session, submission_id)
    shift_id = submission.shift_id
    await session.delete(submission)
    await session.flush()
    await refresh_shift_stats(session, shift_id)
    await session.commit()
    logger.info(f"Deleted submission {submission_id} from exam {exam.id}")
