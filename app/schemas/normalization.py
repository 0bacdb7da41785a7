from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class FormulaOption(BaseModel):
    value: str
    label: str


class ThresholdUpdate(BaseModel):
    """Schema for updating an exam's re-normalization threshold."""

    threshold: float = Field(..., ge=0, le=100, description="Percent of new submissions that triggers a full pass")


class ExamNormalizationStatus(BaseModel):
    exam_id: int
    exam_name: str
    normalization_method: str
    method_label: str
    has_normalization: bool
    total_submissions: int
    subs_at_last_normalization: int
    new_since_last_normalization: int
    percent_new: float
    threshold: float
    needs_renormalization: bool
    recommendation: str
    last_normalized_at: datetime | None = None
    last_ranked_at: datetime | None = None


class NormalizationStatusResponse(BaseModel):
    exams: list[ExamNormalizationStatus]
    total: int


class ForceRenormalizationResponse(BaseModel):
    exam_id: int
    message: str
    status: ExamNormalizationStatus


class FinalizeExamResponse(BaseModel):
    exam_id: int
    finalized_submissions: int
    message: str


class BatchProcessingResponse(BaseModel):
    """Summary of a run over every active exam."""

    exams_processed: int
    total_submissions: int
    errors: list[dict[str, Any]]
    duration: float
