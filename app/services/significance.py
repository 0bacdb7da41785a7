"""Service for detecting drift since an exam's last full normalization."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import Exam, Submission
from app.services.exceptions import ExamNotFoundError
from app.utils.statistics_utils import round_half_up

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignificanceReport:
    exam_id: int
    new_count: int
    total_count: int
    subs_at_last_normalization: int
    percent_new: float
    threshold: float
    is_significant: bool
    last_normalized_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def effective_threshold(exam: Exam) -> float:
    if exam.re_norm_threshold is None:
        return settings.default_renorm_threshold
    return float(exam.re_norm_threshold)


def evaluate_significance(total_count: int, subs_at_last_normalization: int, threshold: float) -> tuple[int, float, bool]:
    """
    Return (new_count, percent_new, is_significant) for the given counts.

    percent_new is the share of the current total that arrived since the
    last full normalization, rounded to 2 decimals. The threshold is compared
    against the rounded value.
    """
    new_count = total_count - subs_at_last_normalization
    percent_new = round_half_up((new_count / total_count) * 100, 2) if total_count > 0 else 0.0
    return new_count, percent_new, percent_new >= threshold


async def count_submissions(session: AsyncSession, exam_id: int) -> int:
    stmt = select(func.count(Submission.id)).where(Submission.exam_id == exam_id)
    return int((await session.execute(stmt)).scalar_one() or 0)


async def check_significance(session: AsyncSession, exam_id: int) -> SignificanceReport:
    """
    Check whether enough submissions arrived since the last full pass to warrant another.

    Read-only.

    Raises:
        ExamNotFoundError: If the exam does not exist
    """
    exam = await session.get(Exam, exam_id)
    if exam is None:
        raise ExamNotFoundError(f"Exam {exam_id} not found")

    total_count = await count_submissions(session, exam_id)
    at_last = exam.subs_at_last_normalization or 0
    threshold = effective_threshold(exam)
    new_count, percent_new, is_significant = evaluate_significance(total_count, at_last, threshold)

    return SignificanceReport(
        exam_id=exam_id,
        new_count=new_count,
        total_count=total_count,
        subs_at_last_normalization=at_last,
        percent_new=percent_new,
        threshold=threshold,
        is_significant=is_significant,
        last_normalized_at=exam.last_normalized_at,
    )


def recommendation(report: SignificanceReport) -> str:
    if report.last_normalized_at is None:
        return "Initial normalization not yet run"
    if report.is_significant:
        return "Full re-normalization recommended"
    return "Incremental normalization sufficient"
