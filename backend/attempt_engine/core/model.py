"""
In-memory attempt document.

An Attempt exclusively owns its SectionStates, which own their
QuestionAttempts. Question content is immutable reference data joined in
from the question bank; the engine never mutates it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union


class AttemptStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.COMPLETED, AttemptStatus.CANCELLED, AttemptStatus.EXPIRED)


class FlushReason(str, Enum):
    MANUAL = "manual"
    NAVIGATION = "navigation"
    PERIODIC = "periodic"
    SECTION_END = "section-end"


class SubmissionTrigger(str, Enum):
    MANUAL = "manual"
    AUTO_TIMEOUT = "auto-timeout"


class SectionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _SECTION_RANK[self]


_SECTION_RANK = {
    SectionStatus.NOT_STARTED: 0,
    SectionStatus.IN_PROGRESS: 1,
    SectionStatus.COMPLETED: 2,
}


class QuestionKind(str, Enum):
    SINGLE_SELECT = "single_select"
    FREE_TEXT = "free_text"
    ESSAY = "essay"

    @property
    def is_text(self) -> bool:
        return self in (QuestionKind.FREE_TEXT, QuestionKind.ESSAY)


@dataclass(frozen=True)
class QuestionContent:
    """Read-only question bank entry."""

    question_id: str
    kind: QuestionKind
    prompt: str = ""
    stimulus: Optional[str] = None
    options: Tuple[str, ...] = ()
    difficulty: Optional[str] = None
    # Only present once the attempt is completed
    correct_option_index: Optional[int] = None


@dataclass
class SingleSelectAnswer:
    selected_option_index: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.selected_option_index is None


@dataclass
class TextAnswer:
    text: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    @property
    def word_count(self) -> int:
        return len(self.text.split())


Answer = Union[SingleSelectAnswer, TextAnswer]


def empty_answer(kind: QuestionKind) -> Answer:
    if kind is QuestionKind.SINGLE_SELECT:
        return SingleSelectAnswer()
    return TextAnswer()


@dataclass
class QuestionAttempt:
    order: int
    question_id: str
    kind: QuestionKind
    answer: Answer = None
    marked_for_review: bool = False
    time_spent_seconds: int = 0
    content: Optional[QuestionContent] = None
    # Written by grading, read-only to the engine
    is_correct: Optional[bool] = None
    marks_awarded: Optional[float] = None

    def __post_init__(self):
        if self.answer is None:
            self.answer = empty_answer(self.kind)

    @property
    def is_answered(self) -> bool:
        return not self.answer.is_empty

    @property
    def option_count(self) -> Optional[int]:
        if self.content is None or not self.content.options:
            return None
        return len(self.content.options)


@dataclass
class SectionState:
    name: str
    duration_seconds: Optional[int]
    status: SectionStatus = SectionStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    questions: List[QuestionAttempt] = field(default_factory=list)

    @property
    def is_timed(self) -> bool:
        return self.duration_seconds is not None

    @property
    def time_used_seconds(self) -> int:
        return sum(q.time_spent_seconds for q in self.questions)

    @property
    def remaining_seconds(self) -> Optional[int]:
        if not self.is_timed:
            return None
        return max(0, self.duration_seconds - self.time_used_seconds)

    def stamp_started(self, when: datetime) -> None:
        if self.started_at is None:
            self.started_at = when

    def stamp_ended(self, when: datetime) -> None:
        if self.ended_at is None:
            self.ended_at = when


@dataclass
class OverallStats:
    total_questions: int = 0
    total_attempted: int = 0
    total_correct: int = 0
    total_incorrect: int = 0
    total_skipped: int = 0
    raw_score: float = 0.0


@dataclass
class Attempt:
    id: str
    user_id: str
    template_id: str
    sections: List[SectionState]
    status: AttemptStatus = AttemptStatus.NOT_STARTED
    total_time_used_seconds: int = 0
    overall_stats: Optional[OverallStats] = None
    current_section_index: int = 0
    current_question_index: int = 0
    last_sync_seq: int = 0
    title: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def section(self, index: int) -> SectionState:
        return self.sections[index]

    def question(self, section_index: int, question_index: int) -> QuestionAttempt:
        return self.sections[section_index].questions[question_index]

    @property
    def active_section_index(self) -> Optional[int]:
        for index, section in enumerate(self.sections):
            if section.status is SectionStatus.IN_PROGRESS:
                return index
        return None

    def check_section_order(self) -> bool:
        """True when sections read completed*, in_progress?, not_started*."""
        seen = [s.status.rank for s in self.sections]
        if seen != sorted(seen, reverse=True):
            return False
        return seen.count(SectionStatus.IN_PROGRESS.rank) <= 1
