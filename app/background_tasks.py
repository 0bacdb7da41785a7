"""Background task runner for normalization and rank calculation jobs."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies.database import get_sessionmanager
from app.services import job_service
from app.services.batch_normalization import run_batch_normalization
from app.services.exceptions import NormalizationError
from app.services.rank_calculator import run_rank_calculation

logger = logging.getLogger(__name__)

JobRunner = Callable[..., Awaitable[dict[str, Any]]]

# Strong references to running tasks until they finish
_running_tasks: set[asyncio.Task] = set()


async def run_job(runner: JobRunner, exam_id: int, job_id: int) -> None:
    """
    Run a tracked job in its own database session.

    The runner marks the job failed on storage errors; a job that cannot
    start (exam closed, another job running) is marked failed here.
    """
    try:
        sessionmanager = get_sessionmanager()

        async with sessionmanager.session() as session:
            try:
                await runner(session, exam_id, job_id=job_id)
            except NormalizationError as e:
                logger.warning(f"Job {job_id} for exam {exam_id} did not run: {e}")
                await _fail(session, job_id, str(e))
            except Exception as e:
                logger.error(f"Error processing job {job_id} for exam {exam_id}: {e}", exc_info=True)
    except Exception as e:
        logger.error(f"Error in background task for job {job_id}: {e}", exc_info=True)


async def _fail(session: AsyncSession, job_id: int, error: str) -> None:
    await session.rollback()
    await job_service.fail_job(session, job_id, error)


def _start(runner: JobRunner, exam_id: int, job_id: int, label: str) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.error(f"No event loop available to start background task for job {job_id}")
        return

    task = loop.create_task(run_job(runner, exam_id, job_id))
    _running_tasks.add(task)
    task.add_done_callback(_running_tasks.discard)
    logger.info(f"Started background task for {label} job {job_id}")


def start_normalization_job(exam_id: int, job_id: int) -> None:
    """Start a batch normalization job as a background task."""
    _start(run_batch_normalization, exam_id, job_id, "normalization")


def start_rank_job(exam_id: int, job_id: int) -> None:
    """Start a rank calculation job as a background task."""
    _start(run_rank_calculation, exam_id, job_id, "rank calculation")
