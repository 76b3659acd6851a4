"""
JSON shape of the attempt document.

The REST API serves an Attempt with `attempt_to_dict`; HttpPersistence
rebuilds it with `attempt_from_dict`.
"""

from datetime import datetime
from typing import Optional

from attempt_engine.core.model import (
    Attempt, AttemptStatus, OverallStats, QuestionAttempt, QuestionContent, QuestionKind,
    SectionState, SectionStatus, SingleSelectAnswer, TextAnswer,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(ts_str: Optional[str]) -> Optional[datetime]:
    """Parse ISO 8601 timestamps, accepting a trailing Z. None for empty input."""
    if not ts_str:
        return None
    if isinstance(ts_str, datetime):
        return ts_str
    if ts_str.endswith("Z"):
        ts_str = ts_str[:-1] + "+00:00"
    return datetime.fromisoformat(ts_str)


def content_to_dict(content: Optional[QuestionContent]) -> Optional[dict]:
    if content is None:
        return None
    return {
        "question_id": content.question_id,
        "question_type": content.kind.value,
        "question_text": content.prompt,
        "stimulus": content.stimulus,
        "options": list(content.options),
        "difficulty": content.difficulty,
        "correct_option_index": content.correct_option_index,
    }


def question_to_dict(question: QuestionAttempt) -> dict:
    is_select = question.kind is QuestionKind.SINGLE_SELECT
    return {
        "order": question.order,
        "question_id": question.question_id,
        "kind": question.kind.value,
        "selected_option_index": question.answer.selected_option_index if is_select else None,
        "answer_text": None if is_select else question.answer.text,
        "is_answered": question.is_answered,
        "marked_for_review": question.marked_for_review,
        "time_spent_seconds": question.time_spent_seconds,
        "is_correct": question.is_correct,
        "marks_awarded": question.marks_awarded,
        "question": content_to_dict(question.content),
    }


def attempt_to_dict(attempt: Attempt) -> dict:
    return {
        "id": attempt.id,
        "user_id": attempt.user_id,
        "template_id": attempt.template_id,
        "title": attempt.title,
        "status": attempt.status.value,
        "total_time_used_seconds": attempt.total_time_used_seconds,
        "current_section_index": attempt.current_section_index,
        "current_question_index": attempt.current_question_index,
        "last_sync_seq": attempt.last_sync_seq,
        "started_at": _iso(attempt.started_at),
        "completed_at": _iso(attempt.completed_at),
        "overall_stats": dict(attempt.overall_stats.__dict__) if attempt.overall_stats else None,
        "sections": [
            {
                "name": section.name,
                "duration_seconds": section.duration_seconds,
                "status": section.status.value,
                "started_at": _iso(section.started_at),
                "ended_at": _iso(section.ended_at),
                "remaining_seconds": section.remaining_seconds,
                "questions": [question_to_dict(q) for q in section.questions],
            }
            for section in attempt.sections
        ],
    }


def _content_from_dict(data: Optional[dict]) -> Optional[QuestionContent]:
    if not data:
        return None
    return QuestionContent(
        question_id=data["question_id"],
        kind=QuestionKind(data["question_type"]),
        prompt=data.get("question_text") or "",
        stimulus=data.get("stimulus"),
        options=tuple(data.get("options") or ()),
        difficulty=data.get("difficulty"),
        correct_option_index=data.get("correct_option_index"),
    )


def _question_from_dict(data: dict) -> QuestionAttempt:
    kind = QuestionKind(data["kind"])
    if kind is QuestionKind.SINGLE_SELECT:
        answer = SingleSelectAnswer(data.get("selected_option_index"))
    else:
        answer = TextAnswer(data.get("answer_text") or "")
    return QuestionAttempt(
        order=data["order"],
        question_id=data["question_id"],
        kind=kind,
        answer=answer,
        marked_for_review=bool(data.get("marked_for_review")),
        time_spent_seconds=int(data.get("time_spent_seconds") or 0),
        content=_content_from_dict(data.get("question")),
        is_correct=data.get("is_correct"),
        marks_awarded=data.get("marks_awarded"),
    )


def attempt_from_dict(data: dict) -> Attempt:
    stats = data.get("overall_stats")
    return Attempt(
        id=data["id"],
        user_id=data["user_id"],
        template_id=data["template_id"],
        title=data.get("title"),
        status=AttemptStatus(data["status"]),
        total_time_used_seconds=int(data.get("total_time_used_seconds") or 0),
        current_section_index=int(data.get("current_section_index") or 0),
        current_question_index=int(data.get("current_question_index") or 0),
        last_sync_seq=int(data.get("last_sync_seq") or 0),
        started_at=parse_timestamp(data.get("started_at")),
        completed_at=parse_timestamp(data.get("completed_at")),
        overall_stats=OverallStats(**stats) if stats else None,
        sections=[
            SectionState(
                name=section["name"],
                duration_seconds=section.get("duration_seconds"),
                status=SectionStatus(section["status"]),
                started_at=parse_timestamp(section.get("started_at")),
                ended_at=parse_timestamp(section.get("ended_at")),
                questions=[_question_from_dict(q) for q in section.get("questions", [])],
            )
            for section in data.get("sections", [])
        ],
    )
