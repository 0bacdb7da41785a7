import httpx
import pytest

from app.config import settings
from app.dependencies.database import get_db_session
from app.main import app
from app.models import ExamStatus, JobRun, JobStatus, JobType


@pytest.fixture
def started_jobs(monkeypatch):
    """Record background job starts instead of spawning tasks."""
    started: list[tuple[str, int, int]] = []

    def record(kind):
        return lambda exam_id, job_id: started.append((kind, exam_id, job_id))

    for module in ("app.routers.normalization", "app.routers.submissions"):
        monkeypatch.setattr(f"{module}.start_normalization_job", record("normalization"))
        monkeypatch.setattr(f"{module}.start_rank_job", record("rank_calculation"))
    monkeypatch.setattr(settings, "auto_schedule_batch", False)
    return started


@pytest.fixture
async def client(session_factory, started_jobs):
    async def override_get_db_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def submission_payload(exam, shift, roll_number="R100", **overrides):
    payload = {
        "exam_id": exam.id,
        "shift_id": shift.id,
        "roll_number": roll_number,
        "name": "Asha Verma",
        "category": "OBC",
        "gender": "F",
        "state": "Rajasthan",
        "responses": [
            {"question_number": 1, "section": "QA", "selected_answer": "A", "correct_answer": "A", "is_correct": True},
            {"question_number": 2, "section": "QA", "selected_answer": "B", "correct_answer": "A", "is_correct": False},
            {"question_number": 3, "section": "GK", "selected_answer": "C", "correct_answer": "C", "is_correct": True},
            {"question_number": 4, "section": "GK", "selected_answer": None, "correct_answer": "D"},
        ],
    }
    payload.update(overrides)
    return payload


async def test_create_submission_scores_and_ranks(client, factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)

    response = await client.post("/api/v1/submissions", json=submission_payload(exam, shift))

    assert response.status_code == 201
    data = response.json()
    assert data["submission"]["raw_score"] == 3.5
    assert data["submission"]["total_attempted"] == 3
    assert data["submission"]["accuracy"] == 66.67
    assert data["submission"]["overall_rank"] == 1
    assert data["submission"]["processing_status"] == "raw_only"
    assert data["normalized_score"] is None
    assert data["ranks_recalculated"] is True
    assert data["significance"]["is_significant"] is True
    assert data["scheduled_job_id"] is None
    assert [s["section"] for s in data["strengths"]] == ["GK", "QA"]


async def test_significant_submission_schedules_normalization(client, factory, started_jobs, monkeypatch):
    monkeypatch.setattr(settings, "auto_schedule_batch", True)
    exam = await factory.exam()
    shift = await factory.shift(exam)

    response = await client.post("/api/v1/submissions", json=submission_payload(exam, shift))

    assert response.status_code == 201
    job_id = response.json()["scheduled_job_id"]
    assert started_jobs == [("normalization", exam.id, job_id)]

    second = await client.post("/api/v1/submissions", json=submission_payload(exam, shift, roll_number="R101"))
    # A normalization job is already pending
    assert second.json()["scheduled_job_id"] is None
    assert len(started_jobs) == 1


async def test_create_submission_rejections(client, factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    closed = await factory.exam(status=ExamStatus.CLOSED)
    closed_shift = await factory.shift(closed)
    other_shift = await factory.shift(await factory.exam())

    first = await client.post("/api/v1/submissions", json=submission_payload(exam, shift))
    assert first.status_code == 201

    duplicate = await client.post("/api/v1/submissions", json=submission_payload(exam, shift))
    assert duplicate.status_code == 409

    missing = await client.post("/api/v1/submissions", json=submission_payload(exam, shift, exam_id=9999))
    assert missing.status_code == 404

    closed_response = await client.post("/api/v1/submissions", json=submission_payload(closed, closed_shift))
    assert closed_response.status_code == 409

    wrong_shift = await client.post("/api/v1/submissions", json=submission_payload(exam, other_shift, "R200"))
    assert wrong_shift.status_code == 400

    empty = await client.post("/api/v1/submissions", json=submission_payload(exam, shift, "R300", responses=[]))
    assert empty.status_code == 422


async def test_get_correct_and_delete_submission(client, factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    [submission] = await factory.submissions(exam, shift, [40.0])

    fetched = await client.get(f"/api/v1/submissions/{submission.id}")
    assert fetched.status_code == 200
    assert fetched.json()["raw_score"] == 40.0

    corrected = await client.patch(
        f"/api/v1/submissions/{submission.id}/raw-score", json={"raw_score": 42.5, "reason": "rescan"}
    )
    assert corrected.status_code == 200
    assert corrected.json()["raw_score"] == 42.5
    assert corrected.json()["overall_rank"] == 1

    deleted = await client.delete(f"/api/v1/submissions/{submission.id}")
    assert deleted.status_code == 204
    assert (await client.get(f"/api/v1/submissions/{submission.id}")).status_code == 404
    assert (await client.delete(f"/api/v1/submissions/{submission.id}")).status_code == 404


async def test_normalization_status_and_threshold(client, factory):
    exam = await factory.exam(normalization_method="percentile")
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [10.0, 20.0])

    response = await client.get("/api/v1/normalization/status", params={"exam_id": exam.id})
    assert response.status_code == 200
    [status] = response.json()["exams"]
    assert status["method_label"] == "Percentile-Based (RRB)"
    assert status["total_submissions"] == 2
    assert status["recommendation"] == "Initial normalization not yet run"

    invalid = await client.patch(f"/api/v1/normalization/{exam.id}/threshold", json={"threshold": 150})
    assert invalid.status_code == 422

    updated = await client.patch(f"/api/v1/normalization/{exam.id}/threshold", json={"threshold": 12.5})
    assert updated.status_code == 200
    assert updated.json()["threshold"] == 12.5

    assert (await client.get("/api/v1/normalization/status", params={"exam_id": 999})).status_code == 404


async def test_force_renormalization_endpoint(client, factory):
    exam = await factory.exam()
    await factory.baseline(exam, subs_at_last_normalization=5)

    response = await client.post(f"/api/v1/normalization/{exam.id}/force")

    assert response.status_code == 200
    assert response.json()["status"]["subs_at_last_normalization"] == 0
    assert response.json()["status"]["last_normalized_at"] is None


async def test_run_normalization_job_and_reject_duplicate(client, factory, started_jobs):
    exam = await factory.exam()

    response = await client.post(f"/api/v1/normalization/{exam.id}/run")
    assert response.status_code == 202
    job = response.json()
    assert job["status"] == "pending"
    assert job["job_type"] == "normalization"
    assert started_jobs == [("normalization", exam.id, job["id"])]

    again = await client.post(f"/api/v1/normalization/{exam.id}/run")
    assert again.status_code == 409

    ranks = await client.post(f"/api/v1/ranks/{exam.id}/run")
    assert ranks.status_code == 202
    assert ranks.json()["job_type"] == "rank_calculation"


async def test_run_rejects_closed_exam(client, factory):
    exam = await factory.exam(status=ExamStatus.CLOSED)
    assert (await client.post(f"/api/v1/normalization/{exam.id}/run")).status_code == 409
    assert (await client.post("/api/v1/normalization/9999/run")).status_code == 404


async def test_run_all_normalizes_every_active_exam(client, factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [30.0, 50.0, 70.0])

    response = await client.post("/api/v1/normalization/run-all")

    assert response.status_code == 200
    assert response.json()["exams_processed"] == 1
    assert response.json()["total_submissions"] == 3

    status = (await client.get("/api/v1/normalization/status", params={"exam_id": exam.id})).json()["exams"][0]
    assert status["recommendation"] == "Incremental normalization sufficient"


async def test_finalize_exam_endpoint(client, factory):
    exam = await factory.exam()
    shift = await factory.shift(exam)
    await factory.submissions(exam, shift, [30.0, 50.0])

    response = await client.post(f"/api/v1/normalization/{exam.id}/finalize")
    assert response.status_code == 200
    assert response.json()["finalized_submissions"] == 2

    again = await client.post(f"/api/v1/normalization/{exam.id}/finalize")
    assert again.status_code == 409
    late = await client.post("/api/v1/submissions", json=submission_payload(exam, shift))
    assert late.status_code == 409


async def test_job_listing_and_cancellation(client, factory):
    exam = await factory.exam()
    finished = JobRun(job_type=JobType.RANK_CALCULATION, exam_id=exam.id, status=JobStatus.SUCCESS)
    factory.session.add(finished)
    await factory.session.commit()
    pending = (await client.post(f"/api/v1/normalization/{exam.id}/run")).json()

    listing = await client.get("/api/v1/jobs", params={"exam_id": exam.id})
    assert listing.status_code == 200
    assert listing.json()["total"] == 2

    filtered = await client.get("/api/v1/jobs", params={"exam_id": exam.id, "status": "pending"})
    assert [job["id"] for job in filtered.json()["items"]] == [pending["id"]]

    cancelled = await client.post(f"/api/v1/jobs/{pending['id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["completed_at"] is not None

    assert (await client.post(f"/api/v1/jobs/{finished.id}/cancel")).status_code == 409
    assert (await client.get(f"/api/v1/jobs/{finished.id}")).json()["status"] == "success"
    assert (await client.get("/api/v1/jobs/9999")).status_code == 404


async def test_cancelling_running_job_keeps_it_active(client, factory):
    exam = await factory.exam()
    running = JobRun(job_type=JobType.NORMALIZATION, exam_id=exam.id, status=JobStatus.RUNNING)
    factory.session.add(running)
    await factory.session.commit()

    response = await client.post(f"/api/v1/jobs/{running.id}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "running"
    assert response.json()["cancel_requested"] is True
    assert response.json()["completed_at"] is None
    # The pass has not stopped yet, so the exam still refuses another
    assert (await client.post(f"/api/v1/normalization/{exam.id}/run")).status_code == 409
