"""
Pydantic schemas shared by the REST routes and the persistence boundary.

ProgressUpdate is the flush payload: a batch of partial question updates
addressed by (section_index, question_index), plus section lifecycle
changes, the aggregate time, and the resume cursor. `sequence` is
monotonic per attempt so storage can discard late, out-of-order writes.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from attempt_engine.core.model import (
    AttemptStatus, FlushReason, OverallStats, QuestionKind, SectionStatus, SubmissionTrigger,
)


# ── Flush payload ────────────────────────────────────────────

class QuestionUpdate(BaseModel):
    section_index: int = Field(..., ge=0)
    question_index: int = Field(..., ge=0)
    selected_option_index: Optional[int] = Field(None, ge=0)
    answer_text: Optional[str] = None
    is_answered: bool = False
    marked_for_review: bool = False
    time_spent_seconds: int = Field(0, ge=0)


class SectionUpdate(BaseModel):
    section_index: int = Field(..., ge=0)
    status: SectionStatus
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ProgressUpdate(BaseModel):
    sequence: int = Field(..., ge=1, description="Monotonic per attempt; stale sequences are discarded")
    reason: FlushReason = FlushReason.MANUAL
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    started_at: Optional[datetime] = None
    updates: List[QuestionUpdate] = Field(default_factory=list)
    sections: List[SectionUpdate] = Field(default_factory=list)
    total_time_used_seconds: int = Field(0, ge=0)
    current_section_index: int = Field(0, ge=0)
    current_question_index: int = Field(0, ge=0)


class SaveProgressResponse(BaseModel):
    attempt_id: str
    applied: bool
    last_sync_seq: int


# ── Submission ───────────────────────────────────────────────

class OverallStatsSchema(BaseModel):
    total_questions: int = 0
    total_attempted: int = 0
    total_correct: int = 0
    total_incorrect: int = 0
    total_skipped: int = 0
    raw_score: float = 0.0

    @classmethod
    def from_stats(cls, stats: OverallStats) -> "OverallStatsSchema":
        return cls(**stats.__dict__)

    def to_stats(self) -> OverallStats:
        return OverallStats(**self.model_dump())


class SubmitRequest(BaseModel):
    trigger: SubmissionTrigger = SubmissionTrigger.MANUAL


class SubmissionResult(BaseModel):
    attempt_id: str
    status: AttemptStatus
    overall_stats: OverallStatsSchema


# ── Attempt lifecycle requests ───────────────────────────────

class StartAttemptRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Owning user; authentication is upstream")
    template_id: str = Field(..., min_length=1)


# ── Template ingestion ───────────────────────────────────────

class QuestionIn(BaseModel):
    """A question bank entry supplied with a template."""
    id: Optional[str] = Field(None, description="Reuse an existing question bank id")
    question_type: QuestionKind = QuestionKind.SINGLE_SELECT
    question_text: str = ""
    stimulus: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    correct_option_index: Optional[int] = Field(None, ge=0)
    difficulty: Optional[str] = None
    marks: float = 1.0
    negative_marks: float = 0.0


class SectionIn(BaseModel):
    name: str
    duration_minutes: Optional[float] = Field(None, gt=0, description="Omit for an untimed section")
    questions: List[QuestionIn] = Field(default_factory=list)


class TemplateIn(BaseModel):
    title: str
    exam_name: Optional[str] = None
    test_type: str = Field("full_length", description="full_length | sectional | quiz")
    sections: List[SectionIn] = Field(..., min_length=1)


# ── Hosted session intents ───────────────────────────────────

class AnswerRequest(BaseModel):
    selected_option_index: Optional[int] = None
    text: Optional[str] = None


class NavigateRequest(BaseModel):
    question_index: int


class EndSectionRequest(BaseModel):
    confirm: bool = False
