"""
Read-only views derived from QuestionAttempt state: the question palette,
the section review summary, and clock formatting.
"""

from dataclasses import dataclass
from typing import List, Optional

from attempt_engine.core.model import QuestionAttempt, SectionState


@dataclass
class PaletteEntry:
    order: int
    status: str
    is_answered: bool
    marked_for_review: bool
    time_spent_seconds: int
    word_count: Optional[int] = None


def question_status(question: QuestionAttempt, is_current: bool) -> str:
    if is_current:
        return "current"
    if question.is_answered and question.marked_for_review:
        return "answered_marked"
    if question.is_answered:
        return "answered"
    if question.marked_for_review:
        return "marked"
    if question.time_spent_seconds == 0:
        return "unvisited"
    return "unanswered"


def build_palette(section: SectionState, current_index: Optional[int]) -> List[PaletteEntry]:
    entries = []
    for index, question in enumerate(section.questions):
        entries.append(PaletteEntry(
            order=question.order,
            status=question_status(question, index == current_index),
            is_answered=question.is_answered,
            marked_for_review=question.marked_for_review,
            time_spent_seconds=question.time_spent_seconds,
            word_count=question.answer.word_count if question.kind.is_text else None,
        ))
    return entries


def section_summary(section: SectionState) -> dict:
    answered = sum(1 for q in section.questions if q.is_answered)
    marked = sum(1 for q in section.questions if q.marked_for_review)
    return {
        "name": section.name,
        "status": section.status.value,
        "total": len(section.questions),
        "answered": answered,
        "marked": marked,
        "unanswered": len(section.questions) - answered,
        "time_used_seconds": section.time_used_seconds,
        "remaining_seconds": section.remaining_seconds,
    }


def format_clock(seconds: Optional[int]) -> str:
    """MM:SS, floor 0. Untimed sections render as "--:--"."""
    if seconds is None:
        return "--:--"
    seconds = max(0, int(seconds))
    return "{:02d}:{:02d}".format(seconds // 60, seconds % 60)
