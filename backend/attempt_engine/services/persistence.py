"""
Persistence Service - the storage side of the attempt engine.

Implements the persistence boundary over SQLAlchemy:
1. Template creation (question bank + ordered sections)
2. start_or_resume_attempt: reuse the learner's open attempt or materialize one
3. load_attempt_detail: attempt document with question content joined in
4. save_progress: partial, sequence-checked updates keyed by
   (section_index, question_index)
5. submit_attempt: idempotent grading and completion
6. cancel_attempt

Rules a flush cannot break: question writes to a section already completed
in storage are ignored; time counters only grow; section status only moves
forward; timestamps are written once.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from attempt_engine.core import model as core
from attempt_engine.database import SessionLocal, session_scope
from attempt_engine.errors import (
    AttemptNotFound, InvalidOperation, NotFound, PersistenceFailure, StaleAttemptState,
)
from attempt_engine.logging_config import get_logger, log_with_context
from attempt_engine.models.attempt import Attempt, AttemptQuestion, AttemptSection
from attempt_engine.models.test_template import Question, TemplateSection, TestTemplate
from attempt_engine.schemas import (
    OverallStatsSchema, ProgressUpdate, SubmissionResult, TemplateIn,
)
from attempt_engine.services.scoring import grade_attempt

db_logger = get_logger("db")

OPEN_STATUSES = ("not_started", "in_progress")
TERMINAL_STATUSES = ("completed", "cancelled", "expired")


def _now():
    return datetime.now(timezone.utc)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Store timezone-naive UTC datetimes for SQLite compatibility."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ── Templates ────────────────────────────────────────────────

def create_template(db: Session, payload: TemplateIn) -> TestTemplate:
    """Create question bank entries and an ordered template from one payload."""
    template = TestTemplate(
        id=str(uuid.uuid4()),
        title=payload.title,
        exam_name=payload.exam_name,
        test_type=payload.test_type,
        created_at=_now()
    )
    db.add(template)

    for position, section_in in enumerate(payload.sections):
        if not section_in.questions:
            raise InvalidOperation("Section '{}' has no questions".format(section_in.name))
        question_ids = []
        for question_in in section_in.questions:
            question = db.get(Question, question_in.id) if question_in.id else None
            if question is None:
                if question_in.question_type is core.QuestionKind.SINGLE_SELECT and not question_in.options:
                    raise InvalidOperation("single_select question needs options")
                if (question_in.correct_option_index is not None
                        and question_in.correct_option_index >= len(question_in.options)):
                    raise InvalidOperation("correct_option_index out of range")
                question = Question(
                    id=question_in.id or str(uuid.uuid4()),
                    question_type=question_in.question_type.value,
                    question_text=question_in.question_text,
                    stimulus=question_in.stimulus,
                    options=json.dumps(question_in.options),
                    correct_option_index=question_in.correct_option_index,
                    difficulty=question_in.difficulty,
                    marks=question_in.marks,
                    negative_marks=question_in.negative_marks,
                    created_at=_now()
                )
                db.add(question)
            question_ids.append(question.id)

        duration = section_in.duration_minutes
        db.add(TemplateSection(
            id=str(uuid.uuid4()),
            template_id=template.id,
            position=position,
            name=section_in.name,
            duration_seconds=int(round(duration * 60)) if duration else None,
            question_ids=json.dumps(question_ids)
        ))

    db.commit()
    db.refresh(template)
    log_with_context(db_logger, "INFO", "Created test template: {}".format(template.title),
                    context={"template_id": template.id},
                    extra_data={"sections": len(payload.sections)})
    return template


def get_template(db: Session, template_id: str) -> TestTemplate:
    template = db.query(TestTemplate).options(
        joinedload(TestTemplate.sections)
    ).filter(TestTemplate.id == template_id).first()
    if not template:
        raise NotFound("Test template not found", template_id=template_id)
    return template


# ── Attempts ─────────────────────────────────────────────────

def get_attempt_row(db: Session, attempt_id: str) -> Attempt:
    attempt = db.query(Attempt).options(
        joinedload(Attempt.sections),
        joinedload(Attempt.questions).joinedload(AttemptQuestion.question),
        joinedload(Attempt.score),
        joinedload(Attempt.template)
    ).filter(Attempt.id == attempt_id).first()
    if not attempt:
        raise AttemptNotFound("Attempt not found", attempt_id=attempt_id)
    return attempt


def start_or_resume_attempt(db: Session, user_id: str, template_id: str) -> Attempt:
    """Return the user's open attempt for the template, or materialize a new one."""
    existing = db.query(Attempt).filter(
        Attempt.user_id == user_id,
        Attempt.template_id == template_id,
        Attempt.status.in_(OPEN_STATUSES)
    ).order_by(Attempt.created_at.desc()).first()
    if existing:
        log_with_context(db_logger, "INFO", "Resuming open attempt",
                        context={"attempt_id": existing.id, "user_id": user_id})
        return get_attempt_row(db, existing.id)

    template = get_template(db, template_id)
    attempt = Attempt(
        id=str(uuid.uuid4()),
        user_id=user_id,
        template_id=template.id,
        status="not_started",
        created_at=_now()
    )
    db.add(attempt)

    for section in template.sections:
        db.add(AttemptSection(
            id=str(uuid.uuid4()),
            attempt_id=attempt.id,
            section_index=section.position,
            name=section.name,
            duration_seconds=section.duration_seconds,
            status="not_started"
        ))
        question_ids = section.question_id_list
        bank = {
            q.id: q for q in db.query(Question).filter(Question.id.in_(question_ids)).all()
        } if question_ids else {}
        for question_index, question_id in enumerate(question_ids):
            question = bank.get(question_id)
            if question is None:
                raise InvalidOperation("Template references unknown question {}".format(question_id))
            db.add(AttemptQuestion(
                id=str(uuid.uuid4()),
                attempt_id=attempt.id,
                section_index=section.position,
                question_index=question_index,
                question_id=question.id,
                order=question_index + 1,
                kind=question.question_type
            ))

    db.commit()
    log_with_context(db_logger, "INFO", "Created attempt from template: {}".format(template.title),
                    context={"attempt_id": attempt.id, "user_id": user_id, "template_id": template.id})
    return get_attempt_row(db, attempt.id)


def question_content(bank: Question, reveal_key: bool = False) -> core.QuestionContent:
    """Immutable content of a bank entry; the correctness key only on request."""
    return core.QuestionContent(
        question_id=bank.id,
        kind=core.QuestionKind(bank.question_type),
        prompt=bank.question_text,
        stimulus=bank.stimulus,
        options=tuple(bank.options_list),
        difficulty=bank.difficulty,
        correct_option_index=bank.correct_option_index if reveal_key else None,
    )


def get_question(db: Session, question_id: str) -> Optional[core.QuestionContent]:
    bank = db.get(Question, question_id)
    return question_content(bank) if bank is not None else None


def to_core(row: Attempt) -> core.Attempt:
    """Build the in-memory attempt document from ORM rows."""
    reveal_key = row.status == "completed"
    by_section = {}
    for q in row.questions:
        by_section.setdefault(q.section_index, []).append(q)

    sections = []
    for s in sorted(row.sections, key=lambda s: s.section_index):
        questions = []
        for q in sorted(by_section.get(s.section_index, []), key=lambda q: q.question_index):
            kind = core.QuestionKind(q.kind)
            if kind is core.QuestionKind.SINGLE_SELECT:
                answer = core.SingleSelectAnswer(q.selected_option_index)
            else:
                answer = core.TextAnswer(q.answer_text or "")
            content = question_content(q.question, reveal_key) if q.question is not None else None
            questions.append(core.QuestionAttempt(
                order=q.order,
                question_id=q.question_id,
                kind=kind,
                answer=answer,
                marked_for_review=bool(q.marked_for_review),
                time_spent_seconds=q.time_spent_seconds or 0,
                content=content,
                is_correct=q.is_correct,
                marks_awarded=q.marks_awarded,
            ))
        sections.append(core.SectionState(
            name=s.name,
            duration_seconds=s.duration_seconds,
            status=core.SectionStatus(s.status),
            started_at=s.started_at,
            ended_at=s.ended_at,
            questions=questions,
        ))

    score = row.score
    stats = core.OverallStats(
        total_questions=score.total_questions,
        total_attempted=score.total_attempted,
        total_correct=score.total_correct,
        total_incorrect=score.total_incorrect,
        total_skipped=score.total_skipped,
        raw_score=float(score.raw_score),
    ) if score is not None else None

    return core.Attempt(
        id=row.id,
        user_id=row.user_id,
        template_id=row.template_id,
        title=row.template.title if row.template else None,
        sections=sections,
        status=core.AttemptStatus(row.status),
        total_time_used_seconds=row.total_time_used_seconds or 0,
        overall_stats=stats,
        current_section_index=row.current_section_index or 0,
        current_question_index=row.current_question_index or 0,
        last_sync_seq=row.last_sync_seq or 0,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def save_progress(db: Session, attempt_id: str, update: ProgressUpdate) -> bool:
    """
    Apply one flush. Returns False when the flush is discarded as out of order.

    Raises StaleAttemptState when the attempt is already terminal.
    """
    attempt = get_attempt_row(db, attempt_id)
    context = {"attempt_id": attempt_id}

    if attempt.status in TERMINAL_STATUSES:
        raise StaleAttemptState("Attempt is {}; refresh and retry".format(attempt.status),
                                attempt_id=attempt_id)

    if update.sequence <= attempt.last_sync_seq:
        log_with_context(db_logger, "WARNING",
            "Discarding out-of-order flush #{} (stored #{})".format(update.sequence, attempt.last_sync_seq),
            context=context, extra_data={"reason": update.reason.value})
        return False

    sections = {s.section_index: s for s in attempt.sections}
    questions = {(q.section_index, q.question_index): q for q in attempt.questions}
    completed_before = {i for i, s in sections.items() if s.status == "completed"}

    ignored = 0
    for item in update.updates:
        row = questions.get((item.section_index, item.question_index))
        if row is None:
            raise InvalidOperation("No question {} in section {}".format(
                item.question_index, item.section_index))
        if item.section_index in completed_before:
            ignored += 1
            continue
        if row.kind == core.QuestionKind.SINGLE_SELECT.value:
            row.selected_option_index = item.selected_option_index
            row.is_answered = item.selected_option_index is not None
        else:
            row.answer_text = item.answer_text or ""
            row.is_answered = bool(row.answer_text.strip())
        row.marked_for_review = item.marked_for_review
        row.time_spent_seconds = max(row.time_spent_seconds or 0, item.time_spent_seconds)

    for item in update.sections:
        section = sections.get(item.section_index)
        if section is None:
            raise InvalidOperation("No section {}".format(item.section_index))
        if item.status.rank > core.SectionStatus(section.status).rank:
            section.status = item.status.value
        if item.started_at and section.started_at is None:
            section.started_at = _naive_utc(item.started_at)
        if item.ended_at and section.ended_at is None:
            section.ended_at = _naive_utc(item.ended_at)

    if attempt.status == "not_started" and update.status is core.AttemptStatus.IN_PROGRESS:
        attempt.status = "in_progress"
        attempt.started_at = attempt.started_at or _naive_utc(update.started_at or _now())

    attempt.total_time_used_seconds = max(attempt.total_time_used_seconds or 0,
                                          update.total_time_used_seconds)
    attempt.current_section_index = update.current_section_index
    attempt.current_question_index = update.current_question_index
    attempt.last_sync_seq = update.sequence
    db.commit()

    log_with_context(db_logger, "DEBUG",
        "Applied flush #{} ({} questions, {} sections)".format(
            update.sequence, len(update.updates) - ignored, len(update.sections)),
        context=context,
        extra_data={"reason": update.reason.value, "ignored_questions": ignored})
    return True


def _submission_result(attempt: Attempt) -> SubmissionResult:
    score = attempt.score
    return SubmissionResult(
        attempt_id=attempt.id,
        status=core.AttemptStatus(attempt.status),
        overall_stats=OverallStatsSchema(
            total_questions=score.total_questions,
            total_attempted=score.total_attempted,
            total_correct=score.total_correct,
            total_incorrect=score.total_incorrect,
            total_skipped=score.total_skipped,
            raw_score=float(score.raw_score),
        ),
    )


def submit_attempt(db: Session, attempt_id: str,
                   trigger: core.SubmissionTrigger = core.SubmissionTrigger.MANUAL) -> SubmissionResult:
    """Grade and complete an attempt. A repeated submit returns the stored result."""
    attempt = get_attempt_row(db, attempt_id)
    if attempt.status == "completed" and attempt.score is not None:
        return _submission_result(attempt)
    if attempt.status == "cancelled":
        raise StaleAttemptState("Attempt was cancelled", attempt_id=attempt_id)

    ended_at = _naive_utc(_now())
    for section in attempt.sections:
        if section.status == "in_progress":
            section.status = "completed"
            section.ended_at = section.ended_at or ended_at

    grade_attempt(attempt, db)
    attempt.status = "completed"
    attempt.completed_at = ended_at
    db.commit()
    db.refresh(attempt)

    log_with_context(db_logger, "INFO", "Attempt submitted",
                    context={"attempt_id": attempt_id, "user_id": attempt.user_id},
                    extra_data={"trigger": trigger.value})
    return _submission_result(attempt)


def cancel_attempt(db: Session, attempt_id: str) -> Attempt:
    attempt = get_attempt_row(db, attempt_id)
    if attempt.status == "cancelled":
        return attempt
    if attempt.status in TERMINAL_STATUSES:
        raise StaleAttemptState("Attempt is {}".format(attempt.status), attempt_id=attempt_id)
    attempt.status = "cancelled"
    attempt.completed_at = _naive_utc(_now())
    db.commit()
    log_with_context(db_logger, "INFO", "Attempt cancelled", context={"attempt_id": attempt_id})
    return attempt


class SqlPersistence:
    """PersistenceBoundary (and QuestionBank) backed by the local database."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _run(self, fn, *args):
        try:
            with session_scope(self.session_factory) as db:
                return fn(db, *args)
        except SQLAlchemyError as e:
            log_with_context(db_logger, "ERROR", "Database error: {}".format(e),
                            extra_data={"operation": fn.__name__})
            raise PersistenceFailure("Database unavailable, retry later") from e

    def get_question(self, question_id: str) -> Optional[core.QuestionContent]:
        return self._run(get_question, question_id)

    def start_or_resume_attempt(self, user_id: str, template_id: str) -> core.Attempt:
        return self._run(lambda db: to_core(start_or_resume_attempt(db, user_id, template_id)))

    def load_attempt_detail(self, attempt_id: str) -> core.Attempt:
        return self._run(lambda db: to_core(get_attempt_row(db, attempt_id)))

    def save_progress(self, attempt_id: str, update: ProgressUpdate) -> bool:
        return self._run(save_progress, attempt_id, update)

    def submit_attempt(self, attempt_id: str, trigger: core.SubmissionTrigger) -> SubmissionResult:
        return self._run(submit_attempt, attempt_id, trigger)

    def cancel_attempt(self, attempt_id: str) -> None:
        self._run(cancel_attempt, attempt_id)
