"""
Attempt models - the persisted attempt document.

One attempts row owns an ordered set of attempt_sections rows, each owning
an ordered set of attempt_questions rows. Rows are keyed by
(attempt_id, section_index[, question_index]) so a flush can update a
single question without rewriting the whole document.
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Text, Integer, Float, Boolean, DateTime, ForeignKey, Index, String, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from attempt_engine.database import Base


class Attempt(Base):
    """
    SQLAlchemy model for the attempts table.

    Lifecycle statuses:
    - not_started: materialized from a template, no section entered yet
    - in_progress: a learner session is driving it
    - completed: graded; attempt_scores row written
    - cancelled: abandoned explicitly
    - expired: reserved for engines that report a timed-out, unsubmitted attempt
    """
    __tablename__ = "attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()),
                doc="Unique attempt identifier")
    user_id = Column(String(64), nullable=False,
                     doc="Owning user; authentication happens upstream")
    template_id = Column(String(36), ForeignKey("test_templates.id"), nullable=False,
                         doc="Template the sections were materialized from")
    status = Column(Text, nullable=False, default="not_started")
    total_time_used_seconds = Column(Integer, nullable=False, default=0,
                                     doc="Aggregate across all sections; never decreases")
    current_section_index = Column(Integer, nullable=False, default=0,
                                   doc="Resume cursor: active section")
    current_question_index = Column(Integer, nullable=False, default=0,
                                    doc="Resume cursor: displayed question")
    last_sync_seq = Column(Integer, nullable=False, default=0,
                           doc="Highest applied flush sequence; older flushes are discarded")
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    template = relationship("TestTemplate", back_populates="attempts")
    sections = relationship("AttemptSection", back_populates="attempt",
                            order_by="AttemptSection.section_index",
                            cascade="all, delete-orphan")
    questions = relationship("AttemptQuestion", back_populates="attempt",
                             cascade="all, delete-orphan")
    score = relationship("AttemptScore", back_populates="attempt", uselist=False,
                         cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_attempts_user_id", "user_id"),
        Index("ix_attempts_template_id", "template_id"),
        Index("ix_attempts_status", "status"),
    )

    def __repr__(self):
        return f"<Attempt(id={self.id}, user={self.user_id}, template={self.template_id}, status='{self.status}')>"


class AttemptSection(Base):
    __tablename__ = "attempt_sections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    attempt_id = Column(String(36), ForeignKey("attempts.id"), nullable=False)
    section_index = Column(Integer, nullable=False)
    name = Column(Text, nullable=False)
    duration_seconds = Column(Integer, nullable=True,
                              doc="Copied from the template at creation; NULL = untimed")
    status = Column(Text, nullable=False, default="not_started",
                    doc="not_started | in_progress | completed; only moves forward")
    started_at = Column(DateTime, nullable=True, doc="Set once")
    ended_at = Column(DateTime, nullable=True, doc="Set once")

    attempt = relationship("Attempt", back_populates="sections")

    __table_args__ = (
        UniqueConstraint("attempt_id", "section_index", name="uq_attempt_sections_position"),
    )

    def __repr__(self):
        return f"<AttemptSection(attempt={self.attempt_id}, index={self.section_index}, status='{self.status}')>"


class AttemptQuestion(Base):
    __tablename__ = "attempt_questions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    attempt_id = Column(String(36), ForeignKey("attempts.id"), nullable=False)
    section_index = Column(Integer, nullable=False)
    question_index = Column(Integer, nullable=False)
    question_id = Column(String(36), ForeignKey("questions.id"), nullable=False,
                         doc="Question bank reference; content is never copied")
    order = Column(Integer, nullable=False, doc="1-based position within the section")
    kind = Column(Text, nullable=False, doc="single_select | free_text | essay")
    selected_option_index = Column(Integer, nullable=True)
    answer_text = Column(Text, nullable=True)
    is_answered = Column(Boolean, nullable=False, default=False)
    marked_for_review = Column(Boolean, nullable=False, default=False)
    time_spent_seconds = Column(Integer, nullable=False, default=0)
    # Grading output
    is_correct = Column(Boolean, nullable=True)
    marks_awarded = Column(Float, nullable=True)

    attempt = relationship("Attempt", back_populates="questions")
    question = relationship("Question")

    __table_args__ = (
        UniqueConstraint("attempt_id", "section_index", "question_index",
                         name="uq_attempt_questions_position"),
        Index("ix_attempt_questions_attempt_id", "attempt_id"),
    )

    def __repr__(self):
        return (f"<AttemptQuestion(attempt={self.attempt_id}, "
                f"pos=({self.section_index}, {self.question_index}), answered={self.is_answered})>")
