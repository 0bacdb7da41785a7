from datetime import datetime
import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from app.dependencies.database import Base


class ExamStatus(enum.Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    CLOSED = "closed"


class NormalizationMethod(enum.Enum):
    Z_SCORE = "z_score"
    PERCENTILE = "percentile"
    MODIFIED_Z = "modified_z"
    EQUATING = "equating"
    RAW = "raw"
    CUSTOM = "custom"


class Category(enum.Enum):
    UR = "UR"
    OBC = "OBC"
    EWS = "EWS"
    SC = "SC"
    ST = "ST"


class Gender(enum.Enum):
    M = "M"
    F = "F"
    O = "O"


class ProcessingStatus(enum.Enum):
    RAW_ONLY = "raw_only"
    INCREMENTALLY_NORMALIZED = "incrementally_normalized"
    FULLY_NORMALIZED = "fully_normalized"
    FINALIZED = "finalized"


class JobType(enum.Enum):
    NORMALIZATION = "normalization"
    RANK_CALCULATION = "rank_calculation"


class JobStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConfidenceLevel(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Exam(Base):
    __tablename__ = "exams"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    status = Column(Enum(ExamStatus), default=ExamStatus.ACTIVE, nullable=False, index=True)
    # Marking scheme
    total_marks = Column(Float, nullable=False)
    default_positive = Column(Float, default=2.0, nullable=False)
    default_negative = Column(Float, default=0.5, nullable=False)
    # Normalization settings
    has_normalization = Column(Boolean, default=True, nullable=False)
    normalization_method = Column(String(20), default=NormalizationMethod.Z_SCORE.value, nullable=False)
    normalization_config = Column(JSON, nullable=True)  # targetMean, targetStdDev, customParams, min/max clamps
    re_norm_threshold = Column(Float, nullable=True)  # percent; None uses the configured default
    last_normalized_at = Column(DateTime, nullable=True)
    subs_at_last_normalization = Column(Integer, default=0, nullable=False)
    # Global stats cache (written only by the batch pass)
    global_count = Column(Integer, default=0, nullable=False)
    global_mean = Column(Float, nullable=True)
    global_std_dev = Column(Float, nullable=True)
    global_distribution = Column(JSON, nullable=True)  # [{"percentile": p, "score": s}, ...] ascending
    global_stats_updated_at = Column(DateTime, nullable=True)
    # Rank pass tracking
    last_ranked_at = Column(DateTime, nullable=True)
    subs_at_last_rank = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    shifts = relationship("Shift", back_populates="exam", cascade="all, delete-orphan")
    submissions = relationship("Submission", back_populates="exam", cascade="all, delete-orphan")
    cutoffs = relationship("Cutoff", back_populates="exam", cascade="all, delete-orphan")
    __table_args__ = (UniqueConstraint("name", "year", name="uq_exam_name_year"),)


class Shift(Base):
    __tablename__ = "shifts"
    id = Column(Integer, primary_key=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_code = Column(String(50), unique=True, nullable=False)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD
    shift_number = Column(Integer, nullable=False)
    # Running aggregate (count/sum/sum of squares are exact; mean/std_dev derive from them)
    candidate_count = Column(Integer, default=0, nullable=False)
    score_sum = Column(Float, default=0.0, nullable=False)
    score_sq_sum = Column(Float, default=0.0, nullable=False)
    avg_raw_score = Column(Float, nullable=True)
    std_dev = Column(Float, nullable=True)
    min_raw_score = Column(Float, nullable=True)
    max_raw_score = Column(Float, nullable=True)
    # Difficulty analysis
    difficulty_index = Column(Float, nullable=True)
    difficulty_label = Column(String(20), nullable=True)  # Easy, Moderate, Difficult
    stats_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    exam = relationship("Exam", back_populates="shifts")
    submissions = relationship("Submission", back_populates="shift")
    __table_args__ = (UniqueConstraint("exam_id", "date", "shift_number", name="uq_exam_shift_date_number"),)


class Submission(Base):
    __tablename__ = "submissions"
    id = Column(Integer, primary_key=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_id = Column(Integer, ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    roll_number = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    dob = Column(String(10), nullable=True)
    category = Column(Enum(Category), nullable=False)
    gender = Column(Enum(Gender), nullable=True)
    state = Column(String(100), nullable=True)
    # Performance
    section_performance = Column(JSON, nullable=True)
    responses = Column(JSON, nullable=True)
    total_attempted = Column(Integer, default=0, nullable=False)
    total_correct = Column(Integer, default=0, nullable=False)
    total_wrong = Column(Integer, default=0, nullable=False)
    accuracy = Column(Float, nullable=True)
    # Scoring
    raw_score = Column(Float, nullable=False)
    normalized_score = Column(Float, nullable=True)
    # Ranks
    overall_rank = Column(Integer, nullable=True)
    category_rank = Column(Integer, nullable=True)
    shift_rank = Column(Integer, nullable=True)
    state_rank = Column(Integer, nullable=True)
    # Percentiles
    overall_percentile = Column(Float, nullable=True)
    category_percentile = Column(Float, nullable=True)
    shift_percentile = Column(Float, nullable=True)
    processing_status = Column(
        Enum(ProcessingStatus), default=ProcessingStatus.RAW_ONLY, nullable=False, index=True
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    exam = relationship("Exam", back_populates="submissions")
    shift = relationship("Shift", back_populates="submissions")
    __table_args__ = (
        UniqueConstraint("roll_number", "exam_id", name="uq_roll_number_exam"),
        Index("ix_submissions_exam_shift", "exam_id", "shift_id"),
        Index("ix_submissions_exam_category_score", "exam_id", "category", "normalized_score"),
        Index("ix_submissions_shift_raw", "shift_id", "raw_score"),
        Index("ix_submissions_exam_state_score", "exam_id", "state", "normalized_score"),
    )


class JobRun(Base):
    __tablename__ = "job_runs"
    id = Column(Integer, primary_key=True)
    job_type = Column(Enum(JobType), nullable=False, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=True, index=True)
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    triggered_by = Column(String(50), default="system", nullable=False)
    total_records = Column(Integer, nullable=True)
    records_processed = Column(Integer, default=0, nullable=False)
    progress_percent = Column(Integer, default=0, nullable=False)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    message = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        # At most one running job of each type per exam
        Index(
            "uq_job_runs_running_exam_type",
            "exam_id",
            "job_type",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
            sqlite_where=text("status = 'RUNNING'"),
        ),
    )


class Cutoff(Base):
    __tablename__ = "cutoffs"
    id = Column(Integer, primary_key=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(Enum(Category), nullable=False)
    expected_cutoff = Column(Float, nullable=False)
    safe_score = Column(Float, nullable=True)
    minimum_score = Column(Float, nullable=True)
    confidence_level = Column(Enum(ConfidenceLevel), nullable=True)
    data_points = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    exam = relationship("Exam", back_populates="cutoffs")
    __table_args__ = (UniqueConstraint("exam_id", "category", name="uq_cutoff_exam_category"),)
