"""Initial normalization schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

exam_status = sa.Enum('UPCOMING', 'ACTIVE', 'CLOSED', name='examstatus')
category = sa.Enum('UR', 'OBC', 'EWS', 'SC', 'ST', name='category')
gender = sa.Enum('M', 'F', 'O', name='gender')
processing_status = sa.Enum(
    'RAW_ONLY', 'INCREMENTALLY_NORMALIZED', 'FULLY_NORMALIZED', 'FINALIZED', name='processingstatus'
)
job_type = sa.Enum('NORMALIZATION', 'RANK_CALCULATION', name='jobtype')
job_status = sa.Enum('PENDING', 'RUNNING', 'SUCCESS', 'FAILED', 'CANCELLED', name='jobstatus')
confidence_level = sa.Enum('LOW', 'MEDIUM', 'HIGH', name='confidencelevel')


def upgrade() -> None:
    # Create exams table
    op.create_table(
        'exams',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('status', exam_status, nullable=False),
        sa.Column('total_marks', sa.Float(), nullable=False),
        sa.Column('default_positive', sa.Float(), nullable=False),
        sa.Column('default_negative', sa.Float(), nullable=False),
        sa.Column('has_normalization', sa.Boolean(), nullable=False),
        sa.Column('normalization_method', sa.String(length=20), nullable=False),
        sa.Column('normalization_config', sa.JSON(), nullable=True),
        sa.Column('re_norm_threshold', sa.Float(), nullable=True),
        sa.Column('last_normalized_at', sa.DateTime(), nullable=True),
        sa.Column('subs_at_last_normalization', sa.Integer(), nullable=False),
        sa.Column('global_count', sa.Integer(), nullable=False),
        sa.Column('global_mean', sa.Float(), nullable=True),
        sa.Column('global_std_dev', sa.Float(), nullable=True),
        sa.Column('global_distribution', sa.JSON(), nullable=True),
        sa.Column('global_stats_updated_at', sa.DateTime(), nullable=True),
        sa.Column('last_ranked_at', sa.DateTime(), nullable=True),
        sa.Column('subs_at_last_rank', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', 'year', name='uq_exam_name_year')
    )
    op.create_index(op.f('ix_exams_slug'), 'exams', ['slug'], unique=True)
    op.create_index(op.f('ix_exams_status'), 'exams', ['status'], unique=False)

    # Create shifts table
    op.create_table(
        'shifts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('exam_id', sa.Integer(), nullable=False),
        sa.Column('shift_code', sa.String(length=50), nullable=False),
        sa.Column('date', sa.String(length=10), nullable=False),
        sa.Column('shift_number', sa.Integer(), nullable=False),
        sa.Column('candidate_count', sa.Integer(), nullable=False),
        sa.Column('score_sum', sa.Float(), nullable=False),
        sa.Column('score_sq_sum', sa.Float(), nullable=False),
        sa.Column('avg_raw_score', sa.Float(), nullable=True),
        sa.Column('std_dev', sa.Float(), nullable=True),
        sa.Column('min_raw_score', sa.Float(), nullable=True),
        sa.Column('max_raw_score', sa.Float(), nullable=True),
        sa.Column('difficulty_index', sa.Float(), nullable=True),
        sa.Column('difficulty_label', sa.String(length=20), nullable=True),
        sa.Column('stats_updated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['exam_id'], ['exams.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shift_code'),
        sa.UniqueConstraint('exam_id', 'date', 'shift_number', name='uq_exam_shift_date_number')
    )
    op.create_index(op.f('ix_shifts_exam_id'), 'shifts', ['exam_id'], unique=False)

    # Create submissions table
    op.create_table(
        'submissions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('exam_id', sa.Integer(), nullable=False),
        sa.Column('shift_id', sa.Integer(), nullable=False),
        sa.Column('roll_number', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('dob', sa.String(length=10), nullable=True),
        sa.Column('category', category, nullable=False),
        sa.Column('gender', gender, nullable=True),
        sa.Column('state', sa.String(length=100), nullable=True),
        sa.Column('section_performance', sa.JSON(), nullable=True),
        sa.Column('responses', sa.JSON(), nullable=True),
        sa.Column('total_attempted', sa.Integer(), nullable=False),
        sa.Column('total_correct', sa.Integer(), nullable=False),
        sa.Column('total_wrong', sa.Integer(), nullable=False),
        sa.Column('accuracy', sa.Float(), nullable=True),
        sa.Column('raw_score', sa.Float(), nullable=False),
        sa.Column('normalized_score', sa.Float(), nullable=True),
        sa.Column('overall_rank', sa.Integer(), nullable=True),
        sa.Column('category_rank', sa.Integer(), nullable=True),
        sa.Column('shift_rank', sa.Integer(), nullable=True),
        sa.Column('state_rank', sa.Integer(), nullable=True),
        sa.Column('overall_percentile', sa.Float(), nullable=True),
        sa.Column('category_percentile', sa.Float(), nullable=True),
        sa.Column('shift_percentile', sa.Float(), nullable=True),
        sa.Column('processing_status', processing_status, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['exam_id'], ['exams.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['shift_id'], ['shifts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('roll_number', 'exam_id', name='uq_roll_number_exam')
    )
    op.create_index(op.f('ix_submissions_exam_id'), 'submissions', ['exam_id'], unique=False)
    op.create_index(op.f('ix_submissions_shift_id'), 'submissions', ['shift_id'], unique=False)
    op.create_index(op.f('ix_submissions_processing_status'), 'submissions', ['processing_status'], unique=False)
    op.create_index('ix_submissions_exam_shift', 'submissions', ['exam_id', 'shift_id'], unique=False)
    op.create_index(
        'ix_submissions_exam_category_score', 'submissions', ['exam_id', 'category', 'normalized_score'], unique=False
    )
    op.create_index('ix_submissions_shift_raw', 'submissions', ['shift_id', 'raw_score'], unique=False)
    op.create_index(
        'ix_submissions_exam_state_score', 'submissions', ['exam_id', 'state', 'normalized_score'], unique=False
    )

    # Create job_runs table
    op.create_table(
        'job_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_type', job_type, nullable=False),
        sa.Column('exam_id', sa.Integer(), nullable=True),
        sa.Column('status', job_status, nullable=False),
        sa.Column('triggered_by', sa.String(length=50), nullable=False),
        sa.Column('total_records', sa.Integer(), nullable=True),
        sa.Column('records_processed', sa.Integer(), nullable=False),
        sa.Column('progress_percent', sa.Integer(), nullable=False),
        sa.Column('cancel_requested', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['exam_id'], ['exams.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_job_runs_job_type'), 'job_runs', ['job_type'], unique=False)
    op.create_index(op.f('ix_job_runs_exam_id'), 'job_runs', ['exam_id'], unique=False)
    op.create_index(op.f('ix_job_runs_status'), 'job_runs', ['status'], unique=False)
    # At most one running job of each type per exam
    op.create_index(
        'uq_job_runs_running_exam_type',
        'job_runs',
        ['exam_id', 'job_type'],
        unique=True,
        postgresql_where=sa.text("status = 'RUNNING'"),
        sqlite_where=sa.text("status = 'RUNNING'"),
    )

    # Create cutoffs table
    op.create_table(
        'cutoffs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('exam_id', sa.Integer(), nullable=False),
        sa.Column('category', category, nullable=False),
        sa.Column('expected_cutoff', sa.Float(), nullable=False),
        sa.Column('safe_score', sa.Float(), nullable=True),
        sa.Column('minimum_score', sa.Float(), nullable=True),
        sa.Column('confidence_level', confidence_level, nullable=True),
        sa.Column('data_points', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['exam_id'], ['exams.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('exam_id', 'category', name='uq_cutoff_exam_category')
    )
    op.create_index(op.f('ix_cutoffs_exam_id'), 'cutoffs', ['exam_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_cutoffs_exam_id'), table_name='cutoffs')
    op.drop_table('cutoffs')
    op.drop_index('uq_job_runs_running_exam_type', table_name='job_runs')
    op.drop_index(op.f('ix_job_runs_status'), table_name='job_runs')
    op.drop_index(op.f('ix_job_runs_exam_id'), table_name='job_runs')
    op.drop_index(op.f('ix_job_runs_job_type'), table_name='job_runs')
    op.drop_table('job_runs')
    op.drop_index('ix_submissions_exam_state_score', table_name='submissions')
    op.drop_index('ix_submissions_shift_raw', table_name='submissions')
    op.drop_index('ix_submissions_exam_category_score', table_name='submissions')
    op.drop_index('ix_submissions_exam_shift', table_name='submissions')
    op.drop_index(op.f('ix_submissions_processing_status'), table_name='submissions')
    op.drop_index(op.f('ix_submissions_shift_id'), table_name='submissions')
    op.drop_index(op.f('ix_submissions_exam_id'), table_name='submissions')
    op.drop_table('submissions')
    op.drop_index(op.f('ix_shifts_exam_id'), table_name='shifts')
    op.drop_table('shifts')
    op.drop_index(op.f('ix_exams_status'), table_name='exams')
    op.drop_index(op.f('ix_exams_slug'), table_name='exams')
    op.drop_table('exams')

    bind = op.get_bind()
    for enum_type in (confidence_level, job_status, job_type, processing_status, gender, category, exam_status):
        enum_type.drop(bind, checkfirst=True)
