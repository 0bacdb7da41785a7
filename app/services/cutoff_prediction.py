"""Service for predicting category cutoffs from the normalized score distribution."""

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import Category, ConfidenceLevel, Cutoff, Submission
from app.services.rank_calculator import effective_score
from app.services.statistics_aggregator import stream_percentiles
from app.utils.statistics_utils import percentile_value, round_half_up

logger = logging.getLogger(__name__)


def selection_ratio(category: Category) -> float:
    return settings.cutoff_selection_ratios.get(category.value, settings.cutoff_default_ratio)


def confidence_for(data_points: int) -> ConfidenceLevel:
    if data_points > settings.cutoff_high_confidence_points:
        return ConfidenceLevel.HIGH
    return ConfidenceLevel.MEDIUM


def cutoff_from_quantile(expected: float, data_points: int) -> dict[str, Any]:
    """Expected cutoff with safe and minimum scores one margin above and below it."""
    margin = settings.cutoff_margin
    return {
        "expected_cutoff": round_half_up(expected, 2),
        "safe_score": round_half_up(expected + margin, 2),
        "minimum_score": round_half_up(expected - margin, 2),
        "confidence_level": confidence_for(data_points),
        "data_points": data_points,
    }


def predict_cutoff(sorted_scores: list[float], ratio: float) -> dict[str, Any]:
    """Cutoff for selecting the top `ratio` share of ascending scores: the (1 - ratio) quantile."""
    return cutoff_from_quantile(percentile_value(sorted_scores, (1 - ratio) * 100), len(sorted_scores))


async def recompute_cutoffs(session: AsyncSession, exam_id: int) -> list[Cutoff]:
    """
    Upsert one predicted cutoff per category that has submissions.

    Each category's scores are streamed in ascending order and only the two
    values around its quantile are kept. Flushes only; the caller commits.
    """
    existing = {
        cutoff.category: cutoff
        for cutoff in (await session.execute(select(Cutoff).where(Cutoff.exam_id == exam_id))).scalars().all()
    }
    counts = dict(
        (
            await session.execute(
                select(Submission.category, func.count(Submission.id))
                .where(Submission.exam_id == exam_id)
                .group_by(Submission.category)
            )
        ).all()
    )

    cutoffs: list[Cutoff] = []
    for category in Category:
        count = counts.get(category, 0)
        if not count:
            continue

        stmt = (
            select(effective_score())
            .where(Submission.exam_id == exam_id, Submission.category == category)
            .order_by(effective_score().asc())
        )
        [expected] = await stream_percentiles(session, stmt, count, [(1 - selection_ratio(category)) * 100])
        prediction = cutoff_from_quantile(expected, count)

        cutoff = existing.get(category)
        if cutoff is None:
            cutoff = Cutoff(exam_id=exam_id, category=category)
            session.add(cutoff)
        for key, value in prediction.items():
            setattr(cutoff, key, value)
        cutoffs.append(cutoff)

    await session.flush()
    logger.info(f"Predicted cutoffs for {len(cutoffs)} categor(ies) of exam {exam_id}")
    return cutoffs
