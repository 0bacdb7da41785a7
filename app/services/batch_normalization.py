"""Service for full normalization passes over an exam."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import bindparam, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import (
    Exam,
    ExamStatus,
    JobStatus,
    JobType,
    NormalizationMethod,
    ProcessingStatus,
    Submission,
)
from app.services import job_service
from app.services.cutoff_prediction import recompute_cutoffs
from app.services.exceptions import (
    BatchAlreadyRunningError,
    ExamClosedError,
    ExamNotFoundError,
    MalformedSubmissionError,
    NormalizationError,
)
from app.services.incremental_normalization import build_params, effective_method
from app.services.job_service import is_job_cancelled
from app.services.rank_calculator import calculate_ranks
from app.services.significance import SignificanceReport, check_significance
from app.services.statistics_aggregator import (
    refresh_exam_shift_stats,
    refresh_global_stats,
    update_difficulty_labels,
)
from app.utils.normalization_formulas import get_normalized_score
from app.utils.statistics_utils import ScoreStats

logger = logging.getLogger(__name__)


async def _get_open_exam(session: AsyncSession, exam_id: int) -> Exam:
    exam = await session.get(Exam, exam_id)
    if exam is None:
        raise ExamNotFoundError(f"Exam {exam_id} not found")
    if exam.status == ExamStatus.CLOSED:
        raise ExamClosedError(f"Exam {exam_id} is closed")
    return exam


def uses_distribution(exam: Exam, method: str) -> bool:
    """Equating reads the global lookup table unless configured as parametric."""
    config = exam.normalization_config or {}
    return method == NormalizationMethod.EQUATING.value and not config.get("parametric")


def _snapshot_query(exam_id: int):
    return (
        select(
            Submission.id,
            Submission.shift_id,
            Submission.raw_score,
            func.rank()
            .over(partition_by=Submission.shift_id, order_by=Submission.raw_score.desc())
            .label("rank_in_shift"),
        )
        .where(Submission.exam_id == exam_id)
        .order_by(Submission.id)
    )


async def _read_snapshot(session: AsyncSession, exam_id: int, chunk_size: int) -> list:
    """
    Read every submission of an exam with its rank in shift, in one statement.

    The pass derives statistics and normalized scores from these rows only,
    so corrections or deletions committed while it runs cannot tear it.
    """
    rows = []
    result = await session.stream(_snapshot_query(exam_id).execution_options(yield_per=chunk_size))
    try:
        async for partition in result.partitions():
            rows.extend(partition)
    finally:
        await result.close()
    return rows


# A row changed since the snapshot keeps the score its correction gave it
_submissions = Submission.__table__
_WRITE_NORMALIZED = (
    update(_submissions)
    .where(
        _submissions.c.id == bindparam("row_id"),
        _submissions.c.raw_score == bindparam("snapshot_raw"),
    )
    .values(
        normalized_score=bindparam("new_score"),
        processing_status=ProcessingStatus.FULLY_NORMALIZED,
    )
)


def _normalize_row(exam: Exam, method: str, row, shift_stats: dict[int, ScoreStats]) -> dict[str, Any]:
    stats = shift_stats.get(row.shift_id)
    if stats is None:
        raise MalformedSubmissionError(f"Shift {row.shift_id} does not belong to exam {exam.id}")
    params = build_params(exam, row.raw_score, stats.mean, stats.std_dev, stats.count, row.rank_in_shift)
    return {
        "row_id": row.id,
        "snapshot_raw": row.raw_score,
        "new_score": get_normalized_score(method, params),
    }


async def _normalize_exam(session: AsyncSession, exam: Exam, job, chunk_size: int) -> dict[str, Any]:
    exam_id = exam.id
    snapshot = await _read_snapshot(session, exam_id, chunk_size)
    snapshot_count = len(snapshot)
    logger.info(f"Batch normalization of exam {exam_id}: snapshot of {snapshot_count} submission(s)")

    # 1-2. Shift and global statistics from the snapshot
    method = effective_method(exam)
    shift_stats = await refresh_exam_shift_stats(session, exam_id, snapshot)
    await refresh_global_stats(session, exam_id, snapshot, build_distribution=uses_distribution(exam, method))
    await update_difficulty_labels(session, exam_id, exam.global_mean)
    await session.commit()
    await job_service.update_progress(session, job, 0, snapshot_count)

    # 3. Every submission, in chunks of the snapshot
    processed = 0
    normalized = 0
    errors: list[dict[str, Any]] = []
    cancelled = False
    for start in range(0, snapshot_count, chunk_size):
        rows = snapshot[start : start + chunk_size]

        updates = []
        for row in rows:
            try:
                updates.append(_normalize_row(exam, method, row, shift_stats))
            except Exception as e:
                logger.error(f"Error normalizing submission id={row.id}: {e}", exc_info=True)
                errors.append({"submission_id": row.id, "error": str(e)})
                continue

        if updates:
            await session.execute(_WRITE_NORMALIZED, updates)
        processed += len(rows)
        normalized += len(updates)
        await job_service.update_progress(session, job, processed, snapshot_count)

        if await is_job_cancelled(session, job):
            cancelled = True
            logger.warning(f"Batch normalization of exam {exam_id} cancelled after {processed} submission(s)")
            break

    if not cancelled:
        # 4. Reset the drift baseline
        exam.last_normalized_at = datetime.utcnow()
        exam.subs_at_last_normalization = snapshot_count
        await session.commit()

        # 5. Ranks and cutoffs on the new scores
        await calculate_ranks(session, exam_id)
        await recompute_cutoffs(session, exam_id)
        await session.commit()

    return {
        "exam_id": exam_id,
        "method": method,
        "exams_processed": 0 if cancelled else 1,
        "total_submissions": processed,
        "normalized": normalized,
        "skipped": len(errors),
        "errors": errors,
        "cancelled": cancelled,
    }


async def run_batch_normalization(
    session: AsyncSession,
    exam_id: int,
    job_id: int | None = None,
    triggered_by: str = "system",
    chunk_size: int | None = None,
) -> dict[str, Any]:
    """
    Full recomputation for one exam.

    Refreshes every shift's statistics and the exam's global statistics,
    renormalizes every submission, resets the drift baseline, then runs a
    full rank pass and recomputes cutoffs. Works on the submissions present
    when the pass starts; later arrivals wait for the next pass.

    Per-record failures are logged and reported in "errors" without aborting
    the pass. Storage errors mark the job failed and propagate.

    Args:
        session: Database session
        exam_id: Exam to normalize
        job_id: Pending job to run under; a new job is recorded when omitted
        triggered_by: Who started the pass
        chunk_size: Submissions per chunk (defaults to settings.batch_chunk_size)

    Returns:
        Dictionary with exams_processed, total_submissions, errors, duration and job details

    Raises:
        ExamNotFoundError: If the exam does not exist
        ExamClosedError: If the exam is closed
        BatchAlreadyRunningError: If a normalization job is already running for the exam
    """
    exam = await _get_open_exam(session, exam_id)
    job = await job_service.claim_job(session, JobType.NORMALIZATION, exam_id, job_id, triggered_by)
    job_id = job.id
    if job.status != JobStatus.RUNNING:
        logger.info(f"Normalization job {job_id} is {job.status.value}, not running it")
        return {
            "exam_id": exam_id,
            "job_id": job_id,
            "status": job.status.value,
            "exams_processed": 0,
            "total_submissions": 0,
            "errors": [],
            "duration": 0.0,
        }

    started = datetime.utcnow()
    try:
        result = await _normalize_exam(session, exam, job, chunk_size or settings.batch_chunk_size)
    except Exception as e:
        logger.error(f"Batch normalization failed for exam {exam_id}: {e}", exc_info=True)
        await session.rollback()
        await job_service.fail_job(session, job_id, str(e))
        raise

    result["job_id"] = job_id
    result["duration"] = (datetime.utcnow() - started).total_seconds()
    message = f"Normalized {result['normalized']} of {result['total_submissions']} submission(s)"
    if result["errors"]:
        message += f", {len(result['errors'])} skipped"
    job = await job_service.complete_job(session, job, result, message)
    result["status"] = job.status.value
    return result


async def run_batch_processing(session: AsyncSession, triggered_by: str = "scheduler") -> dict[str, Any]:
    """
    Run a full normalization pass for every active exam.

    Exams that cannot run (already running, not found) are reported in
    "errors" and the remaining exams still run.
    """
    started = datetime.utcnow()
    exam_ids = (
        (await session.execute(select(Exam.id).where(Exam.status == ExamStatus.ACTIVE).order_by(Exam.id)))
        .scalars()
        .all()
    )

    exams_processed = 0
    total_submissions = 0
    errors: list[dict[str, Any]] = []
    for exam_id in exam_ids:
        try:
            result = await run_batch_normalization(session, exam_id, triggered_by=triggered_by)
        except NormalizationError as e:
            logger.warning(f"Skipping batch normalization of exam {exam_id}: {e}")
            errors.append({"exam_id": exam_id, "error": str(e)})
            continue
        exams_processed += result["exams_processed"]
        total_submissions += result["total_submissions"]
        errors.extend({"exam_id": exam_id, **error} for error in result["errors"])

    duration = (datetime.utcnow() - started).total_seconds()
    logger.info(f"Batch processing finished: {exams_processed} exam(s), {total_submissions} submission(s)")
    return {
        "exams_processed": exams_processed,
        "total_submissions": total_submissions,
        "errors": errors,
        "duration": duration,
    }


async def force_renormalization(session: AsyncSession, exam_id: int) -> SignificanceReport:
    """
    Reset an exam's drift tracking so the next batch pass renormalizes it.

    Until that pass runs, new submissions are left raw.
    """
    exam = await _get_open_exam(session, exam_id)
    exam.last_normalized_at = None
    exam.subs_at_last_normalization = 0
    await session.commit()
    logger.info(f"Forced re-normalization for exam {exam_id}")
    return await check_significance(session, exam_id)


async def update_threshold(session: AsyncSession, exam_id: int, threshold: float) -> SignificanceReport:
    """Set an exam's re-normalization threshold (percent, 0-100)."""
    if not 0 <= threshold <= 100:
        raise ValueError("Threshold must be between 0 and 100")
    exam = await session.get(Exam, exam_id)
    if exam is None:
        raise ExamNotFoundError(f"Exam {exam_id} not found")
    exam.re_norm_threshold = threshold
    await session.commit()
    return await check_significance(session, exam_id)


async def finalize_exam(session: AsyncSession, exam_id: int) -> int:
    """
    Close an exam and move every submission to the finalized state.

    Returns:
        Number of submissions finalized

    Raises:
        BatchAlreadyRunningError: If a normalization job is pending or running for the exam
    """
    exam = await _get_open_exam(session, exam_id)
    active = await job_service.find_active_job(session, exam_id, JobType.NORMALIZATION)
    if active is not None:
        raise BatchAlreadyRunningError(exam_id, active.id)

    result = await session.execute(
        update(Submission)
        .where(Submission.exam_id == exam_id)
        .values(processing_status=ProcessingStatus.FINALIZED)
        .execution_options(synchronize_session=False)
    )
    exam.status = ExamStatus.CLOSED
    await session.commit()
    logger.info(f"Finalized exam {exam_id}: {result.rowcount} submission(s)")
    return result.rowcount
