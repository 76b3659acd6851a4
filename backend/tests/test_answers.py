import pytest

from attempt_engine.core.answers import AnswerStore
from attempt_engine.core.model import AttemptStatus, SectionStatus
from attempt_engine.errors import InvalidOperation, StaleAttemptState

from conftest import make_attempt, make_section


@pytest.fixture
def store():
    attempt = make_attempt(
        make_section("Verbal", kinds=("single_select", "free_text", "essay"), status="in_progress"),
        make_section("Quant"),
        status=AttemptStatus.IN_PROGRESS,
    )
    return AnswerStore(attempt)


def test_last_selection_wins(store):
    for option in (2, 0, 3, 3, 1):
        store.set_selection(0, 0, option)
    question = store.attempt.question(0, 0)
    assert question.answer.selected_option_index == 1
    assert question.is_answered


def test_reselecting_keeps_question_answered(store):
    store.set_selection(0, 0, 2)
    store.set_selection(0, 0, 2)
    assert store.attempt.question(0, 0).is_answered


def test_clear_selection_unanswers(store):
    store.set_selection(0, 0, 1)
    store.clear_selection(0, 0)
    assert not store.attempt.question(0, 0).is_answered


def test_essay_answered_follows_trimmed_text(store):
    question = store.attempt.question(0, 2)
    assert not question.is_answered
    store.set_text(0, 2, "hello world")
    assert question.is_answered
    assert question.answer.word_count == 2
    store.set_text(0, 2, "   ")
    assert not question.is_answered
    store.set_text(0, 2, "")
    assert not question.is_answered


def test_setter_must_match_question_kind(store):
    with pytest.raises(InvalidOperation):
        store.set_text(0, 0, "free text on a multiple choice question")
    with pytest.raises(InvalidOperation):
        store.set_selection(0, 1, 0)
    with pytest.raises(InvalidOperation):
        store.clear_selection(0, 2)


@pytest.mark.parametrize("option", [-1, 4, True, "1"])
def test_rejects_bad_option_index(store, option):
    with pytest.raises(InvalidOperation):
        store.set_selection(0, 0, option)
    assert not store.attempt.question(0, 0).is_answered


def test_unknown_question_is_invalid(store):
    with pytest.raises(InvalidOperation):
        store.set_selection(0, 9, 0)


def test_review_mark_toggles(store):
    store.toggle_marked_for_review(0, 1)
    assert store.attempt.question(0, 1).marked_for_review
    store.toggle_marked_for_review(0, 1)
    assert not store.attempt.question(0, 1).marked_for_review


def test_writes_to_section_not_in_progress_are_stale(store):
    with pytest.raises(StaleAttemptState):
        store.set_selection(1, 0, 0)
    store.attempt.section(0).status = SectionStatus.COMPLETED
    with pytest.raises(StaleAttemptState):
        store.toggle_marked_for_review(0, 0)


def test_writes_to_terminal_attempt_are_stale(store):
    store.attempt.status = AttemptStatus.COMPLETED
    with pytest.raises(StaleAttemptState):
        store.set_text(0, 1, "late")
    assert store.attempt.question(0, 1).answer.text == ""


def test_record_tick_counts_displayed_question_only(store):
    assert store.record_tick(0, 1)
    assert store.record_tick(0, 1)
    attempt = store.attempt
    assert attempt.question(0, 1).time_spent_seconds == 2
    assert attempt.question(0, 0).time_spent_seconds == 0
    assert attempt.total_time_used_seconds == 2


def test_record_tick_ignored_when_stale(store):
    store.attempt.section(0).status = SectionStatus.COMPLETED
    assert store.record_tick(0, 0) is False
    assert store.attempt.question(0, 0).time_spent_seconds == 0
    assert store.attempt.total_time_used_seconds == 0


def test_dirty_keys_are_taken_once_in_order(store):
    store.set_text(0, 2, "x")
    store.set_selection(0, 0, 1)
    assert store.has_pending_changes
    assert store.take_dirty() == [(0, 0), (0, 2)]
    assert store.take_dirty() == []
    assert not store.has_pending_changes
