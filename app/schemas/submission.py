from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.models import Category, Gender, ProcessingStatus


class ParsedResponse(BaseModel):
    """One question from a parsed response sheet."""

    question_number: int = Field(..., ge=1)
    section: str = Field(..., min_length=1)
    selected_answer: str | None = None  # None means unattempted
    correct_answer: str | None = None
    is_correct: bool = False


class SubmissionCreate(BaseModel):
    """A candidate's parsed response sheet, as produced by the parsing subsystem."""

    exam_id: int
    shift_id: int
    roll_number: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    dob: str | None = None
    category: Category
    gender: Gender | None = None
    state: str | None = Field(None, max_length=100)
    responses: list[ParsedResponse] = Field(..., min_length=1)

    @field_validator("roll_number", "name")
    @classmethod
    def strip_text(cls, v: str) -> str:
        value = v.strip()
        if not value:
            raise ValueError("Value cannot be blank")
        return value


class RawScoreCorrection(BaseModel):
    """Admin correction of a stored raw score."""

    raw_score: float
    reason: str | None = None


class SignificanceResponse(BaseModel):
    exam_id: int
    new_count: int
    total_count: int
    subs_at_last_normalization: int
    percent_new: float
    threshold: float
    is_significant: bool
    last_normalized_at: datetime | None = None


class SubmissionResponse(BaseModel):
    id: int
    exam_id: int
    shift_id: int
    roll_number: str
    name: str
    category: Category
    gender: Gender | None = None
    state: str | None = None
    raw_score: float
    normalized_score: float | None = None
    total_attempted: int
    total_correct: int
    total_wrong: int
    accuracy: float | None = None
    section_performance: dict[str, Any] | None = None
    overall_rank: int | None = None
    category_rank: int | None = None
    shift_rank: int | None = None
    state_rank: int | None = None
    overall_percentile: float | None = None
    category_percentile: float | None = None
    shift_percentile: float | None = None
    processing_status: ProcessingStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PostSubmissionResponse(BaseModel):
    """Result of intake: the stored submission plus what the incremental path did."""

    submission: SubmissionResponse
    normalized_score: float | None = None
    ranks_recalculated: bool
    rank_refresh_due: bool
    significance: SignificanceResponse
    scheduled_job_id: int | None = None
    strengths: list[dict[str, Any]] = []
    weaknesses: list[dict[str, Any]] = []
