from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from attempt_engine.core.clock import ManualClock
from attempt_engine.core.model import AttemptStatus, QuestionKind, SectionStatus, SubmissionTrigger
from attempt_engine.core.state_machine import AttemptStateMachine
from attempt_engine.errors import (
    AttemptNotFound, InvalidOperation, NotFound, PersistenceFailure, StaleAttemptState, SubmissionFailed,
)
from attempt_engine.schemas import ProgressUpdate, QuestionUpdate, SectionIn, SectionUpdate, TemplateIn
from attempt_engine.services import persistence
from attempt_engine.services.persistence import SqlPersistence


def _update(sequence, updates=(), sections=(), **kwargs):
    kwargs.setdefault("total_time_used_seconds", 0)
    return ProgressUpdate(sequence=sequence, updates=list(updates), sections=list(sections), **kwargs)


def _answer(section_index, question_index, **fields):
    return QuestionUpdate(section_index=section_index, question_index=question_index, **fields)


def _start(db, template_id, user_id):
    return persistence.start_or_resume_attempt(db, user_id, template_id)


def test_start_materializes_attempt_from_template(db, template_id):
    row = _start(db, template_id, "materialize")
    attempt = persistence.to_core(row)

    assert attempt.status is AttemptStatus.NOT_STARTED
    assert [s.name for s in attempt.sections] == ["Verbal", "Writing"]
    assert [s.duration_seconds for s in attempt.sections] == [60, None]
    assert [len(s.questions) for s in attempt.sections] == [2, 1]
    first = attempt.question(0, 0)
    assert first.order == 1
    assert first.content.options == ("a", "b", "c", "d")
    # The key stays hidden until the attempt is completed
    assert first.content.correct_option_index is None
    assert attempt.question(1, 0).kind is QuestionKind.ESSAY


def test_start_resumes_open_attempt(db, template_id):
    first = _start(db, template_id, "resumer")
    again = _start(db, template_id, "resumer")
    other = _start(db, template_id, "someone-else")
    assert again.id == first.id
    assert other.id != first.id


def test_unknown_template_and_attempt(db):
    with pytest.raises(NotFound):
        persistence.start_or_resume_attempt(db, "nobody", "missing-template")
    with pytest.raises(AttemptNotFound):
        persistence.get_attempt_row(db, "missing-attempt")


def test_template_section_without_questions_is_rejected(db):
    payload = TemplateIn(title="Broken", sections=[SectionIn(name="Empty", duration_minutes=5)])
    with pytest.raises(InvalidOperation):
        persistence.create_template(db, payload)
    db.rollback()


def test_save_progress_applies_partial_updates(db, template_id):
    row = _start(db, template_id, "saver")
    started = datetime(2026, 1, 1, 9, 0, 0)
    applied = persistence.save_progress(db, row.id, _update(
        1,
        updates=[_answer(0, 0, selected_option_index=3, marked_for_review=True, time_spent_seconds=12)],
        sections=[SectionUpdate(section_index=0, status="in_progress", started_at=started)],
        status="in_progress", started_at=started,
        total_time_used_seconds=12, current_question_index=1,
    ))
    assert applied is True

    attempt = persistence.to_core(persistence.get_attempt_row(db, row.id))
    assert attempt.status is AttemptStatus.IN_PROGRESS
    assert attempt.last_sync_seq == 1
    assert attempt.current_question_index == 1
    assert attempt.total_time_used_seconds == 12
    question = attempt.question(0, 0)
    assert question.answer.selected_option_index == 3
    assert question.marked_for_review is True
    assert question.time_spent_seconds == 12
    # Untouched question keeps its defaults
    assert attempt.question(0, 1).time_spent_seconds == 0
    assert attempt.section(0).status is SectionStatus.IN_PROGRESS
    assert attempt.section(0).started_at == started


def test_out_of_order_flush_is_discarded(db, template_id):
    row = _start(db, template_id, "out-of-order")
    persistence.save_progress(db, row.id, _update(2, updates=[_answer(0, 0, selected_option_index=2)]))
    late = persistence.save_progress(db, row.id, _update(1, updates=[_answer(0, 0, selected_option_index=0)]))

    assert late is False
    attempt = persistence.to_core(persistence.get_attempt_row(db, row.id))
    assert attempt.question(0, 0).answer.selected_option_index == 2
    assert attempt.last_sync_seq == 2


def test_counters_only_grow_and_status_only_moves_forward(db, template_id):
    row = _start(db, template_id, "monotonic")
    first_start = datetime(2026, 1, 1, 9, 0, 0)
    persistence.save_progress(db, row.id, _update(
        1,
        updates=[_answer(0, 0, time_spent_seconds=30)],
        sections=[SectionUpdate(section_index=0, status="completed", started_at=first_start,
                                ended_at=first_start + timedelta(minutes=1))],
        total_time_used_seconds=30,
    ))
    persistence.save_progress(db, row.id, _update(
        2,
        updates=[_answer(0, 1, time_spent_seconds=5)],
        sections=[SectionUpdate(section_index=0, status="in_progress",
                                started_at=first_start + timedelta(hours=1))],
        total_time_used_seconds=10,
    ))

    attempt = persistence.to_core(persistence.get_attempt_row(db, row.id))
    section = attempt.section(0)
    assert section.status is SectionStatus.COMPLETED
    assert section.started_at == first_start
    assert attempt.total_time_used_seconds == 30
    # Writes to a section completed in storage are ignored
    assert attempt.question(0, 1).time_spent_seconds == 0


def test_text_answers_recompute_answered(db, template_id):
    row = _start(db, template_id, "essayist")
    persistence.save_progress(db, row.id, _update(
        1, updates=[_answer(1, 0, answer_text="  ", is_answered=True)]))
    stored = persistence.get_attempt_row(db, row.id)
    essay = next(q for q in stored.questions if q.section_index == 1)
    assert essay.is_answered is False


def test_unknown_question_position_is_invalid(db, template_id):
    row = _start(db, template_id, "bad-position")
    with pytest.raises(InvalidOperation):
        persistence.save_progress(db, row.id, _update(1, updates=[_answer(0, 7)]))
    db.rollback()


def test_submit_grades_with_negative_marking(db, template_id):
    row = _start(db, template_id, "grader")
    persistence.save_progress(db, row.id, _update(
        1,
        updates=[
            _answer(0, 0, selected_option_index=1),
            _answer(0, 1, selected_option_index=1),
            _answer(1, 0, answer_text="A reasoned essay"),
        ],
        status="in_progress",
    ))

    result = persistence.submit_attempt(db, row.id, SubmissionTrigger.MANUAL)
    stats = result.overall_stats
    assert result.status is AttemptStatus.COMPLETED
    assert stats.total_questions == 3
    assert stats.total_attempted == 3
    assert (stats.total_correct, stats.total_incorrect, stats.total_skipped) == (1, 1, 0)
    assert stats.raw_score == pytest.approx(2 - 0.25)

    attempt = persistence.to_core(persistence.get_attempt_row(db, row.id))
    assert attempt.question(0, 0).is_correct is True
    assert attempt.question(0, 0).marks_awarded == 2
    assert attempt.question(0, 1).is_correct is False
    assert attempt.question(1, 0).is_correct is None
    assert attempt.question(0, 0).content.correct_option_index == 1


def test_submit_is_idempotent(db, template_id):
    row = _start(db, template_id, "double-submit")
    first = persistence.submit_attempt(db, row.id)
    second = persistence.submit_attempt(db, row.id, SubmissionTrigger.AUTO_TIMEOUT)
    assert first == second
    assert first.overall_stats.total_skipped == 3


def test_writes_after_completion_are_stale(db, template_id):
    row = _start(db, template_id, "late-writer")
    persistence.submit_attempt(db, row.id)
    with pytest.raises(StaleAttemptState):
        persistence.save_progress(db, row.id, _update(5, updates=[_answer(0, 0, selected_option_index=0)]))
    with pytest.raises(StaleAttemptState):
        persistence.cancel_attempt(db, row.id)


def test_cancelled_attempt_cannot_be_submitted(db, template_id):
    row = _start(db, template_id, "canceller")
    persistence.cancel_attempt(db, row.id)
    assert persistence.cancel_attempt(db, row.id).status == "cancelled"
    with pytest.raises(StaleAttemptState):
        persistence.submit_attempt(db, row.id)
    # A cancelled attempt is no longer open, so the next start is a fresh one
    assert _start(db, template_id, "canceller").id != row.id


def test_database_errors_become_persistence_failures():
    def broken_factory():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    store = SqlPersistence(session_factory=broken_factory)
    with pytest.raises(PersistenceFailure) as excinfo:
        store.load_attempt_detail("anything")
    assert excinfo.value.retryable


def test_question_bank_lookup(db, template_id):
    store = SqlPersistence()
    attempt = store.start_or_resume_attempt("bank-reader", template_id)
    content = store.get_question(attempt.question(0, 0).question_id)
    assert content.prompt == "Pick the synonym"
    assert content.correct_option_index is None
    assert store.get_question("no-such-question") is None


def test_engine_round_trip_through_database(database, template_id):
    store = SqlPersistence()
    attempt = store.start_or_resume_attempt("round-trip", template_id)
    machine = AttemptStateMachine(attempt, ManualClock(), store)
    machine.start()
    machine.select_option(1)
    machine.clock.advance(7)
    machine.navigate(1)
    machine.clock.advance(3)
    machine.abandon()

    resumed = store.load_attempt_detail(attempt.id)
    assert resumed.status is AttemptStatus.IN_PROGRESS
    assert resumed.current_question_index == 1
    assert resumed.question(0, 0).answer.selected_option_index == 1
    assert [q.time_spent_seconds for q in resumed.section(0).questions] == [7, 3]

    machine = AttemptStateMachine(resumed, ManualClock(), store)
    machine.start()
    assert machine.remaining_seconds() == 50
    machine.end_section(confirm=True)
    assert machine.remaining_seconds() is None
    machine.write_text("Essay body")
    stats = machine.submit()

    assert machine.status is AttemptStatus.COMPLETED
    assert stats.total_attempted == 2
    assert stats.total_correct == 1
    assert stats.raw_score == pytest.approx(2.0)


def test_unacknowledged_early_submit_completes_on_reload(database, template_id, monkeypatch):
    store = SqlPersistence()
    attempt = store.start_or_resume_attempt("early-submitter", template_id)
    machine = AttemptStateMachine(attempt, ManualClock(), store)
    machine.start()
    machine.select_option(1)

    def grader_offline(attempt_id, trigger):
        raise PersistenceFailure("grader offline")

    monkeypatch.setattr(store, "submit_attempt", grader_offline)
    with pytest.raises(SubmissionFailed):
        machine.submit()
    monkeypatch.undo()

    stored = store.load_attempt_detail(attempt.id)
    assert stored.status is AttemptStatus.IN_PROGRESS
    assert [s.status for s in stored.sections] == [SectionStatus.COMPLETED, SectionStatus.NOT_STARTED]

    machine = AttemptStateMachine(stored, ManualClock(), store)
    machine.start()

    assert machine.status is AttemptStatus.COMPLETED
    assert machine.attempt.section(1).status is SectionStatus.NOT_STARTED
    assert store.load_attempt_detail(attempt.id).status is AttemptStatus.COMPLETED
