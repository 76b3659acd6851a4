"""
Grading Service - authoritative scoring of a finalized attempt.

Implements the marking rules:
1. single_select: correct iff the selection equals the question's
   correct_option_index; correct earns `marks`, incorrect earns
   `-negative_marks`
2. free_text / essay: answered ones count as attempted but are neither
   correct nor incorrect (scored externally)
3. unanswered questions are skipped and earn 0
4. raw_score = sum of marks awarded
"""

import time
import json
from datetime import datetime, timezone
from sqlalchemy.orm import Session
from attempt_engine.models.attempt import Attempt
from attempt_engine.models.attempt_score import AttemptScore
from attempt_engine.models.test_template import Question
from attempt_engine.logging_config import get_logger, log_with_context

# Channel logger for grading operations
logger = get_logger("grading")


def _grade_question(row, question: Question):
    """Return (is_correct, marks_awarded) for one attempt_questions row."""
    if not row.is_answered:
        return None, 0.0
    if row.kind != "single_select" or question is None or question.correct_option_index is None:
        return None, 0.0
    if row.selected_option_index == question.correct_option_index:
        return True, float(question.marks if question.marks is not None else 1.0)
    return False, -float(question.negative_marks or 0.0)


def grade_attempt(attempt: Attempt, db: Session) -> AttemptScore:
    """
    Grade every question of an attempt and write its AttemptScore.

    Idempotent: an attempt that already has a score keeps it.

    Args:
        attempt: The Attempt ORM object to grade
        db: Database session (the caller commits)

    Returns:
        AttemptScore ORM object with the overall stats
    """
    if attempt.score is not None:
        return attempt.score

    start_time = time.time()

    question_ids = {row.question_id for row in attempt.questions}
    bank = {
        q.id: q for q in db.query(Question).filter(Question.id.in_(question_ids)).all()
    } if question_ids else {}

    totals = {"questions": 0, "attempted": 0, "correct": 0, "incorrect": 0, "skipped": 0}
    raw_score = 0.0
    per_section = {}

    for row in sorted(attempt.questions, key=lambda r: (r.section_index, r.question_index)):
        is_correct, marks = _grade_question(row, bank.get(row.question_id))
        row.is_correct = is_correct
        row.marks_awarded = marks

        bucket = per_section.setdefault(row.section_index, {
            "correct": 0, "incorrect": 0, "skipped": 0, "raw_score": 0.0
        })
        totals["questions"] += 1
        if not row.is_answered:
            totals["skipped"] += 1
            bucket["skipped"] += 1
            continue
        totals["attempted"] += 1
        if is_correct is True:
            totals["correct"] += 1
            bucket["correct"] += 1
        elif is_correct is False:
            totals["incorrect"] += 1
            bucket["incorrect"] += 1
        raw_score += marks
        bucket["raw_score"] += marks

    section_names = {s.section_index: s.name for s in attempt.sections}
    explanation = {
        "sections": [
            {"section_index": index, "name": section_names.get(index), **stats}
            for index, stats in sorted(per_section.items())
        ]
    }

    score_record = AttemptScore(
        attempt_id=attempt.id,
        total_questions=totals["questions"],
        total_attempted=totals["attempted"],
        total_correct=totals["correct"],
        total_incorrect=totals["incorrect"],
        total_skipped=totals["skipped"],
        raw_score=raw_score,
        computed_at=datetime.now(timezone.utc),
        explanation=json.dumps(explanation)
    )
    db.add(score_record)
    attempt.score = score_record

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Attempt graded: {} (correct={}, incorrect={}, skipped={})".format(
            raw_score, totals["correct"], totals["incorrect"], totals["skipped"]),
        context={
            "attempt_id": str(attempt.id),
            "user_id": str(attempt.user_id),
            "template_id": str(attempt.template_id)
        },
        extra_data={
            "duration_ms": round(duration_ms, 2),
            "raw_score": float(raw_score),
            "attempted": totals["attempted"]
        })

    return score_record
