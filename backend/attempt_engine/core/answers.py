"""
AnswerStore - per-question answer payloads, flags and time accounting.

Every mutator targets one `(section_index, question_index)` and touches
only that question's fields. Mutations are rejected with StaleAttemptState
once the attempt or the section is no longer in progress; `record_tick`
instead degrades to a no-op so a late clock tick cannot corrupt
finalized state. Touched questions are remembered until the next flush
takes them.
"""

from typing import Set, Tuple

from attempt_engine.core.model import (
    Attempt, AttemptStatus, QuestionAttempt, QuestionKind, SectionStatus,
)
from attempt_engine.errors import InvalidOperation, StaleAttemptState

Key = Tuple[int, int]


class AnswerStore:
    """Answer, review-flag and time edits for questions of the active section."""

    def __init__(self, attempt: Attempt):
        self.attempt = attempt
        self._dirty: Set[Key] = set()

    # ── guards ────────────────────────────────────────────────

    def _is_writable(self, section_index: int) -> bool:
        if self.attempt.status is not AttemptStatus.IN_PROGRESS:
            return False
        return self.attempt.section(section_index).status is SectionStatus.IN_PROGRESS

    def _writable_question(self, section_index: int, question_index: int) -> QuestionAttempt:
        try:
            question = self.attempt.question(section_index, question_index)
        except IndexError:
            raise InvalidOperation(
                "No question {} in section {}".format(question_index, section_index),
                section_index=section_index, question_index=question_index)
        if not self._is_writable(section_index):
            raise StaleAttemptState(
                "Section {} is no longer in progress; refresh and retry".format(section_index),
                section_index=section_index, question_index=question_index)
        return question

    # ── mutators ──────────────────────────────────────────────

    def set_selection(self, section_index: int, question_index: int, option_index: int) -> QuestionAttempt:
        """Select one option, replacing any earlier choice."""
        question = self._writable_question(section_index, question_index)
        if question.kind is not QuestionKind.SINGLE_SELECT:
            raise InvalidOperation(
                "Question {} is {}, not single_select".format(question.order, question.kind.value))
        if isinstance(option_index, bool) or not isinstance(option_index, int) or option_index < 0:
            raise InvalidOperation("Option index must be a non-negative integer")
        if question.option_count is not None and option_index >= question.option_count:
            raise InvalidOperation(
                "Option {} out of range for question {} ({} options)".format(
                    option_index, question.order, question.option_count))
        # Re-selecting replaces; there is only ever one selection
        question.answer.selected_option_index = option_index
        self._dirty.add((section_index, question_index))
        return question

    def clear_selection(self, section_index: int, question_index: int) -> QuestionAttempt:
        question = self._writable_question(section_index, question_index)
        if question.kind is not QuestionKind.SINGLE_SELECT:
            raise InvalidOperation("Only single_select answers can be cleared")
        question.answer.selected_option_index = None
        self._dirty.add((section_index, question_index))
        return question

    def set_text(self, section_index: int, question_index: int, value: str) -> QuestionAttempt:
        question = self._writable_question(section_index, question_index)
        if not question.kind.is_text:
            raise InvalidOperation(
                "Question {} is {}, not free_text/essay".format(question.order, question.kind.value))
        if not isinstance(value, str):
            raise InvalidOperation("Text answer must be a string")
        question.answer.text = value
        self._dirty.add((section_index, question_index))
        return question

    def toggle_marked_for_review(self, section_index: int, question_index: int) -> QuestionAttempt:
        """Review flag is independent of whether the question is answered."""
        question = self._writable_question(section_index, question_index)
        question.marked_for_review = not question.marked_for_review
        self._dirty.add((section_index, question_index))
        return question

    def record_tick(self, section_index: int, question_index: int) -> bool:
        """Attribute one second to the displayed question. Ignored when stale."""
        if not self._is_writable(section_index):
            return False
        question = self.attempt.question(section_index, question_index)
        question.time_spent_seconds += 1
        self.attempt.total_time_used_seconds += 1
        self._dirty.add((section_index, question_index))
        return True

    # ── flush support ─────────────────────────────────────────

    def mark_dirty(self, section_index: int, question_index: int) -> None:
        self._dirty.add((section_index, question_index))

    def take_dirty(self):
        keys = sorted(self._dirty)
        self._dirty.clear()
        return keys

    @property
    def has_pending_changes(self) -> bool:
        return bool(self._dirty)
