"""Service for computing competition ranks and percentiles within an exam."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Numeric, case, cast, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Exam, JobStatus, JobType, Submission
from app.services import job_service
from app.services.exceptions import ExamNotFoundError
from app.services.significance import count_submissions
from app.utils.statistics_utils import round_half_up

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankScope:
    name: str
    rank_field: str
    percentile_field: str | None
    partition_field: str | None = None


RANK_SCOPES = (
    RankScope("overall", "overall_rank", "overall_percentile"),
    RankScope("category", "category_rank", "category_percentile", "category"),
    RankScope("shift", "shift_rank", "shift_percentile", "shift_id"),
    RankScope("state", "state_rank", None, "state"),
)


def effective_score():
    """Normalized score where present, otherwise the raw score."""
    return func.coalesce(Submission.normalized_score, Submission.raw_score)


def percentile_from_rank(rank: int, scope_size: int) -> float | None:
    if scope_size <= 0:
        return None
    return round_half_up((scope_size - rank + 1) / scope_size * 100, 2)


def _scope_update(exam_id: int, scope: RankScope):
    """UPDATE .. FROM a windowed ranking of one scope."""
    partition = getattr(Submission, scope.partition_field) if scope.partition_field else None
    score = effective_score()

    ranked = select(
        Submission.id.label("submission_id"),
        func.rank().over(partition_by=partition, order_by=score.desc()).label("position"),
        func.count().over(partition_by=partition).label("scope_size"),
    ).where(Submission.exam_id == exam_id)
    if partition is not None:
        ranked = ranked.where(partition.isnot(None))
    ranked = ranked.subquery()

    values: dict[str, Any] = {scope.rank_field: ranked.c.position}
    if scope.percentile_field:
        values[scope.percentile_field] = func.round(
            cast((ranked.c.scope_size - ranked.c.position + 1) * 100.0 / ranked.c.scope_size, Numeric),
            2,
        )

    return (
        update(Submission)
        .where(Submission.id == ranked.c.submission_id)
        .values(values)
        .execution_options(synchronize_session=False)
    )


async def calculate_ranks(session: AsyncSession, exam_id: int) -> int:
    """
    Full rank pass over every scope of an exam.

    Ties share a rank and the next distinct score skips by the tie-group
    size. Scores are ordered by normalized score, falling back to raw.
    Idempotent; commits when done.

    Returns:
        Number of submissions ranked
    """
    exam = await session.get(Exam, exam_id)
    if exam is None:
        raise ExamNotFoundError(f"Exam {exam_id} not found")

    total = await count_submissions(session, exam_id)
    if exam.has_normalization:
        pending_stmt = select(func.count(Submission.id)).where(
            Submission.exam_id == exam_id, Submission.normalized_score.is_(None)
        )
        pending = int((await session.execute(pending_stmt)).scalar_one() or 0)
        if pending:
            logger.warning(f"Ranking exam {exam_id} with {pending} unnormalized submission(s) using raw scores")

    for scope in RANK_SCOPES:
        await session.execute(_scope_update(exam_id, scope))

    exam.last_ranked_at = datetime.utcnow()
    exam.subs_at_last_rank = total
    await session.commit()
    logger.info(f"Ranked {total} submission(s) for exam {exam_id}")
    return total


async def update_submission_ranks(session: AsyncSession, submission: Submission) -> dict[str, Any]:
    """
    Recompute one submission's rank and percentile in each of its scopes.

    rank = count(strictly greater scores in scope) + 1. Other submissions keep
    their existing ranks until the next full pass. Flushes only.
    """
    score = submission.normalized_score if submission.normalized_score is not None else submission.raw_score
    effective = effective_score()
    ranks: dict[str, Any] = {}

    for scope in RANK_SCOPES:
        stmt = select(
            func.count(Submission.id),
            func.coalesce(func.sum(case((effective > score, 1), else_=0)), 0),
        ).where(Submission.exam_id == submission.exam_id)
        if scope.partition_field:
            value = getattr(submission, scope.partition_field)
            if value is None:
                setattr(submission, scope.rank_field, None)
                ranks[scope.rank_field] = None
                continue
            stmt = stmt.where(getattr(Submission, scope.partition_field) == value)

        size, greater = (await session.execute(stmt)).one()
        rank = int(greater) + 1
        setattr(submission, scope.rank_field, rank)
        ranks[scope.rank_field] = rank
        if scope.percentile_field:
            pct = percentile_from_rank(rank, int(size))
            setattr(submission, scope.percentile_field, pct)
            ranks[scope.percentile_field] = pct

    await session.flush()
    return ranks


async def run_rank_calculation(
    session: AsyncSession, exam_id: int, job_id: int | None = None, triggered_by: str = "system"
) -> dict[str, Any]:
    """
    Run a full rank pass as a tracked job.

    Raises:
        BatchAlreadyRunningError: If a rank job is already running for the exam
    """
    job = await job_service.claim_job(session, JobType.RANK_CALCULATION, exam_id, job_id, triggered_by)
    job_id = job.id
    if job.status != JobStatus.RUNNING:
        return {"exam_id": exam_id, "job_id": job_id, "status": job.status.value, "ranked": 0}

    started = datetime.utcnow()
    try:
        ranked = await calculate_ranks(session, exam_id)
    except Exception as e:
        logger.error(f"Rank calculation failed for exam {exam_id}: {e}", exc_info=True)
        await session.rollback()
        await job_service.fail_job(session, job_id, str(e))
        raise

    result = {
        "exam_id": exam_id,
        "job_id": job_id,
        "ranked": ranked,
        "duration": (datetime.utcnow() - started).total_seconds(),
    }
    job = await job_service.complete_job(session, job, result, f"Ranked {ranked} submission(s)")
    result["status"] = job.status.value
    return result
