from collections.abc import Sequence
from datetime import datetime
from itertools import count

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.dependencies.database import Base
from app.models import Category, Exam, ExamStatus, Shift, Submission

TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
async def engine():
    # One shared in-memory database per test
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, autocommit=False, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


class DataFactory:
    """Creates exams, shifts and submissions directly in the database."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._seq = count(1)

    async def exam(self, **kwargs) -> Exam:
        n = next(self._seq)
        values = {
            "name": f"Exam {n}",
            "slug": f"exam-{n}",
            "year": 2026,
            "status": ExamStatus.ACTIVE,
            "total_marks": 200.0,
        }
        values.update(kwargs)
        exam = Exam(**values)
        self.session.add(exam)
        await self.session.commit()
        return exam

    async def shift(self, exam: Exam, **kwargs) -> Shift:
        n = next(self._seq)
        values = {
            "exam_id": exam.id,
            "shift_code": f"S{n}",
            "date": "2026-03-01",
            "shift_number": n,
        }
        values.update(kwargs)
        shift = Shift(**values)
        self.session.add(shift)
        await self.session.commit()
        return shift

    async def submissions(
        self,
        exam: Exam,
        shift: Shift,
        raw_scores: Sequence[float],
        category: Category = Category.UR,
        state: str | None = None,
        **kwargs,
    ) -> list[Submission]:
        rows = []
        for raw in raw_scores:
            n = next(self._seq)
            values = {
                "exam_id": exam.id,
                "shift_id": shift.id,
                "roll_number": f"R{n:06d}",
                "name": f"Candidate {n}",
                "category": category,
                "state": state,
                "raw_score": raw,
            }
            values.update(kwargs)
            rows.append(Submission(**values))
        self.session.add_all(rows)
        await self.session.commit()
        return rows

    async def baseline(self, exam: Exam, subs_at_last_normalization: int = 0, **global_stats) -> Exam:
        """Mark the exam as having completed a full normalization."""
        exam.last_normalized_at = datetime.utcnow()
        exam.subs_at_last_normalization = subs_at_last_normalization
        for key, value in global_stats.items():
            setattr(exam, key, value)
        await self.session.commit()
        return exam


@pytest.fixture
def factory(session) -> DataFactory:
    return DataFactory(session)


async def fetch_submissions(session: AsyncSession, exam_id: int) -> list[Submission]:
    """Reload an exam's submissions, bypassing stale identity-map state."""
    stmt = (
        select(Submission)
        .where(Submission.exam_id == exam_id)
        .order_by(Submission.id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


@pytest.fixture
def reload():
    return fetch_submissions
