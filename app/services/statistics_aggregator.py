"""Service for refreshing cached shift and exam score statistics."""

import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Sequence

from sqlalchemy import Select, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import Exam, Shift, Submission
from app.utils.statistics_utils import (
    ScoreStats,
    build_percentile_distribution,
    interpolation_positions,
)

logger = logging.getLogger(__name__)

# Shift mean this far from the exam mean (in raw marks) earns an Easy/Difficult label
DIFFICULTY_MARGIN = 10.0


def _aggregate_columns():
    return (
        func.count(Submission.id),
        func.coalesce(func.sum(Submission.raw_score), 0.0),
        func.coalesce(func.sum(Submission.raw_score * Submission.raw_score), 0.0),
        func.min(Submission.raw_score),
        func.max(Submission.raw_score),
    )


def _stats_from_row(row) -> ScoreStats:
    count, total, sq_total, min_val, max_val = row
    return ScoreStats.from_sums(int(count or 0), float(total or 0.0), float(sq_total or 0.0), min_val, max_val)


def _apply_shift_stats(shift: Shift, stats: ScoreStats, total: float, sq_total: float) -> None:
    shift.candidate_count = stats.count
    shift.score_sum = total
    shift.score_sq_sum = sq_total
    shift.avg_raw_score = stats.mean if stats.count else None
    shift.std_dev = stats.std_dev if stats.count else None
    shift.min_raw_score = stats.min if stats.count else None
    shift.max_raw_score = stats.max if stats.count else None
    shift.stats_updated_at = datetime.utcnow()


async def refresh_shift_stats(session: AsyncSession, shift_id: int) -> ScoreStats:
    """
    Recompute one shift's cached aggregate from its current submissions.

    Args:
        session: Database session
        shift_id: Shift to refresh

    Returns:
        The recomputed statistics; zero values when the shift has no submissions
    """
    shift = await session.get(Shift, shift_id)
    if shift is None:
        logger.warning(f"Shift {shift_id} not found, skipping stats refresh")
        return ScoreStats()

    stmt = select(*_aggregate_columns()).where(
        Submission.shift_id == shift_id,
        Submission.exam_id == shift.exam_id,
    )
    row = (await session.execute(stmt)).one()
    stats = _stats_from_row(row)
    _apply_shift_stats(shift, stats, float(row[1] or 0.0), float(row[2] or 0.0))
    await session.flush()
    return stats


def _sums(scores: Sequence[float]) -> tuple[ScoreStats, float, float]:
    total = math.fsum(scores)
    sq_total = math.fsum(score * score for score in scores)
    stats = ScoreStats.from_sums(
        len(scores), total, sq_total, min(scores, default=None), max(scores, default=None)
    )
    return stats, total, sq_total


async def refresh_exam_shift_stats(
    session: AsyncSession, exam_id: int, snapshot: Sequence
) -> dict[int, ScoreStats]:
    """
    Recompute the cached aggregate of every shift of an exam from a batch snapshot.

    Args:
        session: Database session
        exam_id: Exam whose shifts are refreshed
        snapshot: Rows with shift_id and raw_score, read once by the batch pass

    Returns:
        Statistics per shift id; zero values for shifts absent from the snapshot
    """
    shifts = (await session.execute(select(Shift).where(Shift.exam_id == exam_id))).scalars().all()

    scores_by_shift: dict[int, list[float]] = defaultdict(list)
    for row in snapshot:
        scores_by_shift[row.shift_id].append(float(row.raw_score))

    result: dict[int, ScoreStats] = {}
    for shift in shifts:
        stats, total, sq_total = _sums(scores_by_shift.get(shift.id, []))
        _apply_shift_stats(shift, stats, total, sq_total)
        result[shift.id] = stats

    await session.flush()
    logger.info(f"Refreshed stats for {len(shifts)} shift(s) of exam {exam_id}")
    return result


async def stream_percentiles(
    session: AsyncSession, stmt: Select, count: int, percentiles: Sequence[float]
) -> list[float]:
    """
    Interpolated percentiles of a single-column query sorted ascending.

    Values are streamed and only those at the interpolation positions are
    kept in memory; the read stops once the highest position is reached.

    Args:
        session: Database session
        stmt: Ascending single-column select
        count: Number of rows the select returns
        percentiles: Percentiles (0-100) to compute

    Returns:
        One value per requested percentile; 0.0 each when count is zero
    """
    if count <= 0:
        return [0.0 for _ in percentiles]

    positions = [interpolation_positions(count, p) for p in percentiles]
    wanted = {index for lower, upper, _ in positions for index in (lower, upper)}

    picked: dict[int, float] = {}
    last_index = max(wanted)
    index = 0
    result = await session.stream_scalars(stmt.execution_options(yield_per=settings.batch_chunk_size))
    try:
        async for value in result:
            if index in wanted:
                picked[index] = float(value)
            if index >= last_index:
                break
            index += 1
    finally:
        await result.close()

    values = []
    for lower, upper, weight in positions:
        low = picked.get(lower, 0.0)
        high = picked.get(upper, low)
        values.append(low * (1 - weight) + high * weight)
    return values


async def refresh_global_stats(
    session: AsyncSession,
    exam_id: int,
    snapshot: Sequence,
    build_distribution: bool = False,
) -> ScoreStats:
    """
    Recompute the exam-wide aggregate from a batch snapshot and store it on the exam.

    Args:
        session: Database session
        exam_id: Exam to refresh
        snapshot: Rows with raw_score, read once by the batch pass
        build_distribution: Also rebuild the percentile lookup table used by equating

    Returns:
        The recomputed statistics; zero values when the exam has no submissions
    """
    exam = await session.get(Exam, exam_id)
    if exam is None:
        logger.warning(f"Exam {exam_id} not found, skipping global stats refresh")
        return ScoreStats()

    scores = sorted(float(row.raw_score) for row in snapshot)
    stats, _, _ = _sums(scores)

    exam.global_count = stats.count
    exam.global_mean = stats.mean if stats.count else None
    exam.global_std_dev = stats.std_dev if stats.count else None
    if build_distribution:
        exam.global_distribution = build_percentile_distribution(scores, settings.equating_distribution_points)
    else:
        exam.global_distribution = None
    exam.global_stats_updated_at = datetime.utcnow()
    await session.flush()

    logger.info(
        f"Exam {exam_id} global stats: count={stats.count}, mean={stats.mean:.2f}, std_dev={stats.std_dev:.2f}"
    )
    return stats


def difficulty_label(shift_mean: float, global_mean: float) -> str:
    if shift_mean > global_mean + DIFFICULTY_MARGIN:
        return "Easy"
    if shift_mean < global_mean - DIFFICULTY_MARGIN:
        return "Difficult"
    return "Moderate"


async def update_difficulty_labels(session: AsyncSession, exam_id: int, global_mean: float | None) -> int:
    """Label every shift of an exam against the exam-wide mean. Returns the number of shifts labelled."""
    shifts = (await session.execute(select(Shift).where(Shift.exam_id == exam_id))).scalars().all()

    labelled = 0
    for shift in shifts:
        if not shift.candidate_count or shift.avg_raw_score is None or not global_mean:
            shift.difficulty_index = None
            shift.difficulty_label = None
            continue
        shift.difficulty_index = round(shift.avg_raw_score / global_mean, 4)
        shift.difficulty_label = difficulty_label(shift.avg_raw_score, global_mean)
        labelled += 1

    await session.flush()
    return labelled


async def include_in_shift_aggregate(session: AsyncSession, shift_id: int, raw_score: float) -> ScoreStats:
    """
    Fold one new raw score into a shift's running aggregate.

    Count, sums and extrema change in a single UPDATE so concurrent inserts
    into the same shift cannot lose increments. The standard deviation is
    derived from the sums read back under the same row lock.
    """
    new_count = Shift.candidate_count + 1
    new_sum = Shift.score_sum + raw_score
    await session.execute(
        update(Shift)
        .where(Shift.id == shift_id)
        .values(
            candidate_count=new_count,
            score_sum=new_sum,
            score_sq_sum=Shift.score_sq_sum + raw_score * raw_score,
            avg_raw_score=new_sum / new_count,
            min_raw_score=case(
                (Shift.min_raw_score.is_(None), raw_score),
                (Shift.min_raw_score > raw_score, raw_score),
                else_=Shift.min_raw_score,
            ),
            max_raw_score=case(
                (Shift.max_raw_score.is_(None), raw_score),
                (Shift.max_raw_score < raw_score, raw_score),
                else_=Shift.max_raw_score,
            ),
            stats_updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )

    row = (
        await session.execute(
            select(
                Shift.candidate_count,
                Shift.score_sum,
                Shift.score_sq_sum,
                Shift.min_raw_score,
                Shift.max_raw_score,
            ).where(Shift.id == shift_id)
        )
    ).one_or_none()
    if row is None:
        return ScoreStats()

    stats = ScoreStats.from_sums(*row)
    await session.execute(
        update(Shift)
        .where(Shift.id == shift_id)
        .values(std_dev=stats.std_dev)
        .execution_options(synchronize_session=False)
    )
    return stats
