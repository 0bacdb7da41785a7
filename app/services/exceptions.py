"""Exceptions raised by the normalization and ranking services."""


class NormalizationError(Exception):
    """Base exception for normalization and ranking errors."""

    pass


class ExamNotFoundError(NormalizationError):
    pass


class ExamClosedError(NormalizationError):
    """The exam is closed and its results are final."""

    pass


class SubmissionNotFoundError(NormalizationError):
    pass


class MalformedSubmissionError(NormalizationError):
    """A stored submission cannot be normalized (e.g. its shift belongs to another exam)."""

    pass


class BatchAlreadyRunningError(NormalizationError):
    """A job of the same type is already running for the exam."""

    def __init__(self, exam_id: int, job_id: int | None = None):
        self.exam_id = exam_id
        self.job_id = job_id
        detail = f"A batch job is already running for exam {exam_id}"
        if job_id is not None:
            detail += f" (job {job_id})"
        super().__init__(detail)


class JobNotFoundError(NormalizationError):
    pass
