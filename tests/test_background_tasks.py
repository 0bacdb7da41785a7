import asyncio
import contextlib

import pytest

from app import background_tasks
from app.models import ExamStatus, JobRun, JobStatus, JobType
from app.services import job_service
from app.services.batch_normalization import run_batch_normalization


class FakeSessionManager:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextlib.asynccontextmanager
    async def session(self):
        async with self.session_factory() as session:
            yield session


@pytest.fixture(autouse=True)
def sessionmanager(monkeypatch, session_factory):
    manager = FakeSessionManager(session_factory)
    monkeypatch.setattr(background_tasks, "get_sessionmanager", lambda: manager)
    return manager


async def job_status(session_factory, job_id: int) -> JobRun:
    async with session_factory() as session:
        return await session.get(JobRun, job_id)


async def test_rank_job_runs_in_background(factory, session_factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [12.0, 18.0])
    job = await job_service.create_job(factory.session, JobType.RANK_CALCULATION, exam.id)

    background_tasks.start_rank_job(exam.id, job.id)
    await asyncio.gather(*background_tasks._running_tasks)

    finished = await job_status(session_factory, job.id)
    assert finished.status == JobStatus.SUCCESS
    assert finished.result["ranked"] == 2


async def test_job_that_cannot_start_is_marked_failed(factory, session_factory):
    exam = await factory.exam()
    job = await job_service.create_job(factory.session, JobType.NORMALIZATION, exam.id)
    exam.status = ExamStatus.CLOSED
    await factory.session.commit()

    await background_tasks.run_job(run_batch_normalization, exam.id, job.id)

    failed = await job_status(session_factory, job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == f"Exam {exam.id} is closed"
