"""Initial migration - create all tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates all database tables for the Attempt Engine:
- questions: Question bank (content + correctness key + marking)
- test_templates: Ordered multi-section test definitions
- template_sections: Sections of a template with duration and question ids
- attempts: A user's attempt on a template, with resume cursor and sync sequence
- attempt_sections: Per-attempt section lifecycle
- attempt_questions: Per-attempt answers, review marks and time spent
- attempt_scores: Overall stats of a completed attempt

Also creates indexes for common query patterns.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── Question Bank ─────────────────────────────────────────
    op.create_table(
        'questions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('question_type', sa.Text(), nullable=False, server_default='single_select'),
        sa.Column('question_text', sa.Text(), nullable=False, server_default=''),
        sa.Column('stimulus', sa.Text(), nullable=True),
        sa.Column('options', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('correct_option_index', sa.Integer(), nullable=True),
        sa.Column('difficulty', sa.Text(), nullable=True),
        sa.Column('marks', sa.Float(), nullable=False, server_default='1'),
        sa.Column('negative_marks', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    # ── Templates ─────────────────────────────────────────────
    op.create_table(
        'test_templates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('exam_name', sa.Text(), nullable=True),
        sa.Column('test_type', sa.Text(), nullable=False, server_default='full_length'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'template_sections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('template_id', sa.String(36),
                  sa.ForeignKey('test_templates.id'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('question_ids', sa.Text(), nullable=False, server_default='[]'),
    )
    op.create_index('ix_template_sections_template_id', 'template_sections', ['template_id'])

    # ── Attempts ──────────────────────────────────────────────
    op.create_table(
        'attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('template_id', sa.String(36),
                  sa.ForeignKey('test_templates.id'), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='not_started'),
        sa.Column('total_time_used_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_section_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_question_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_sync_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    # Indexes for common query patterns on attempts
    op.create_index('ix_attempts_user_id', 'attempts', ['user_id'])
    op.create_index('ix_attempts_template_id', 'attempts', ['template_id'])
    op.create_index('ix_attempts_status', 'attempts', ['status'])

    op.create_table(
        'attempt_sections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('attempt_id', sa.String(36),
                  sa.ForeignKey('attempts.id'), nullable=False),
        sa.Column('section_index', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='not_started'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('attempt_id', 'section_index', name='uq_attempt_sections_position'),
    )

    op.create_table(
        'attempt_questions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('attempt_id', sa.String(36),
                  sa.ForeignKey('attempts.id'), nullable=False),
        sa.Column('section_index', sa.Integer(), nullable=False),
        sa.Column('question_index', sa.Integer(), nullable=False),
        sa.Column('question_id', sa.String(36),
                  sa.ForeignKey('questions.id'), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False),
        sa.Column('selected_option_index', sa.Integer(), nullable=True),
        sa.Column('answer_text', sa.Text(), nullable=True),
        sa.Column('is_answered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('marked_for_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('time_spent_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_correct', sa.Boolean(), nullable=True),
        sa.Column('marks_awarded', sa.Float(), nullable=True),
        sa.UniqueConstraint('attempt_id', 'section_index', 'question_index',
                            name='uq_attempt_questions_position'),
    )
    op.create_index('ix_attempt_questions_attempt_id', 'attempt_questions', ['attempt_id'])

    # ── Attempt Scores Table ──────────────────────────────────
    op.create_table(
        'attempt_scores',
        sa.Column('attempt_id', sa.String(36),
                  sa.ForeignKey('attempts.id'), primary_key=True),
        sa.Column('total_questions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_attempted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_correct', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_incorrect', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('raw_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('computed_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('explanation', sa.Text(), nullable=True),
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_table('attempt_scores')
    op.drop_index('ix_attempt_questions_attempt_id', table_name='attempt_questions')
    op.drop_table('attempt_questions')
    op.drop_table('attempt_sections')
    op.drop_index('ix_attempts_status', table_name='attempts')
    op.drop_index('ix_attempts_template_id', table_name='attempts')
    op.drop_index('ix_attempts_user_id', table_name='attempts')
    op.drop_table('attempts')
    op.drop_index('ix_template_sections_template_id', table_name='template_sections')
    op.drop_table('template_sections')
    op.drop_table('test_templates')
    op.drop_table('questions')
