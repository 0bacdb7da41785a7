import pytest
from sqlalchemy import select

from app.models import Category, Exam, JobRun, JobStatus, JobType
from app.services.exceptions import BatchAlreadyRunningError, ExamNotFoundError
from app.services.rank_calculator import (
    calculate_ranks,
    percentile_from_rank,
    run_rank_calculation,
    update_submission_ranks,
)


def test_percentile_from_rank():
    assert percentile_from_rank(1, 3) == 100.0
    assert percentile_from_rank(3, 3) == 33.33
    assert percentile_from_rank(2, 3) == 66.67
    assert percentile_from_rank(1, 0) is None


async def test_ties_share_rank_and_skip(factory, reload):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [100.0, 100.0, 90.0])

    ranked = await calculate_ranks(factory.session, exam.id)

    assert ranked == 3
    rows = await reload(factory.session, exam.id)
    assert [r.overall_rank for r in rows] == [1, 1, 3]
    assert [r.overall_percentile for r in rows] == [100.0, 100.0, 33.33]
    assert [r.shift_rank for r in rows] == [1, 1, 3]


async def test_category_and_shift_partitions(factory, reload):
    exam = await factory.exam()
    morning = await factory.shift(exam)
    evening = await factory.shift(exam)
    await factory.submissions(exam, morning, [150.0, 120.0], category=Category.UR)
    await factory.submissions(exam, evening, [140.0, 130.0], category=Category.SC)

    await calculate_ranks(factory.session, exam.id)

    rows = await reload(factory.session, exam.id)
    by_score = {r.raw_score: r for r in rows}
    assert [by_score[s].overall_rank for s in (150.0, 140.0, 130.0, 120.0)] == [1, 2, 3, 4]
    assert by_score[140.0].category_rank == 1
    assert by_score[140.0].category_percentile == 100.0
    assert by_score[120.0].category_rank == 2
    assert by_score[120.0].category_percentile == 50.0
    assert by_score[130.0].shift_rank == 2
    assert by_score[130.0].shift_percentile == 50.0


async def test_state_rank_skips_missing_state(factory, reload):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [80.0], state="Kerala")
    await factory.submissions(exam, shift, [90.0], state="Kerala")
    await factory.submissions(exam, shift, [95.0])

    await calculate_ranks(factory.session, exam.id)

    rows = await reload(factory.session, exam.id)
    by_score = {r.raw_score: r for r in rows}
    assert by_score[90.0].state_rank == 1
    assert by_score[80.0].state_rank == 2
    assert by_score[95.0].state_rank is None
    assert by_score[95.0].overall_rank == 1


async def test_normalized_score_takes_precedence(factory, reload):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [150.0], normalized_score=100.0)
    await factory.submissions(exam, shift, [120.0])

    await calculate_ranks(factory.session, exam.id)

    rows = await reload(factory.session, exam.id)
    assert [(r.raw_score, r.overall_rank) for r in rows] == [(150.0, 2), (120.0, 1)]


async def test_full_pass_records_rank_tracking(factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [10.0, 20.0])

    await calculate_ranks(factory.session, exam.id)

    refreshed = await factory.session.get(Exam, exam.id)
    assert refreshed.last_ranked_at is not None
    assert refreshed.subs_at_last_rank == 2


async def test_full_pass_is_idempotent(factory, reload):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [70.0, 85.0, 85.0, 60.0])

    await calculate_ranks(factory.session, exam.id)
    first = [(r.overall_rank, r.overall_percentile) for r in await reload(factory.session, exam.id)]
    await calculate_ranks(factory.session, exam.id)
    second = [(r.overall_rank, r.overall_percentile) for r in await reload(factory.session, exam.id)]

    assert first == second == [(3, 50.0), (1, 100.0), (1, 100.0), (4, 25.0)]


async def test_calculate_ranks_unknown_exam(session):
    with pytest.raises(ExamNotFoundError):
        await calculate_ranks(session, 404)


async def test_scoped_update_leaves_other_ranks(factory, reload):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [100.0, 80.0])
    await calculate_ranks(factory.session, exam.id)
    [newcomer] = await factory.submissions(exam, shift, [90.0])

    ranks = await update_submission_ranks(factory.session, newcomer)
    await factory.session.commit()

    assert ranks["overall_rank"] == 2
    assert ranks["overall_percentile"] == pytest.approx(66.67)
    assert ranks["state_rank"] is None
    rows = await reload(factory.session, exam.id)
    # The 80 keeps its stale rank until the next full pass
    assert [r.overall_rank for r in rows] == [1, 2, 2]


async def test_run_rank_calculation_records_job(factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [55.0, 65.0])

    result = await run_rank_calculation(factory.session, exam.id, triggered_by="test")

    assert result["ranked"] == 2
    assert result["status"] == "success"
    job = await factory.session.get(JobRun, result["job_id"])
    assert job.status == JobStatus.SUCCESS
    assert job.job_type == JobType.RANK_CALCULATION
    assert job.progress_percent == 100
    assert job.result["ranked"] == 2


async def test_run_rank_calculation_rejects_concurrent_run(factory):
    exam = await factory.exam()
    factory.session.add(JobRun(job_type=JobType.RANK_CALCULATION, exam_id=exam.id, status=JobStatus.RUNNING))
    await factory.session.commit()

    with pytest.raises(BatchAlreadyRunningError):
        await run_rank_calculation(factory.session, exam.id)


async def test_failed_rank_job_is_marked_failed(factory, monkeypatch):
    exam = await factory.exam()

    async def broken(session, exam_id):
        raise RuntimeError("window function unavailable")

    monkeypatch.setattr("app.services.rank_calculator.calculate_ranks", broken)

    with pytest.raises(RuntimeError):
        await run_rank_calculation(factory.session, exam.id)

    [job] = (await factory.session.execute(select(JobRun))).scalars().all()
    await factory.session.refresh(job)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "window function unavailable"
