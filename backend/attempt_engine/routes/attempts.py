"""
Attempts API routes - the persistence boundary over HTTP.

Provides endpoints for:
- Listing attempts with filters and pagination
- Starting (or resuming) a user's attempt on a template
- Loading the attempt document
- Saving progress flushes from an engine instance
- Final submission (grading) and cancellation

Remote engines reach these through HttpPersistence; the hosted sessions in
routes/sessions.py call the same service functions in-process.
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session, joinedload

from attempt_engine.database import get_db
from attempt_engine.models.attempt import Attempt
from attempt_engine.schemas import (
    ProgressUpdate, SaveProgressResponse, StartAttemptRequest, SubmissionResult, SubmitRequest,
)
from attempt_engine.serialization import attempt_to_dict
from attempt_engine.services import persistence
from attempt_engine.logging_config import get_logger, log_with_context

router = APIRouter()
logger = get_logger("http")


def serialize_attempt_summary(attempt: Attempt) -> dict:
    """List-row view of an attempt: no questions, score totals only."""
    score = attempt.score
    return {
        "id": str(attempt.id),
        "user_id": attempt.user_id,
        "template_id": str(attempt.template_id),
        "title": attempt.template.title if attempt.template else None,
        "status": attempt.status,
        "total_time_used_seconds": attempt.total_time_used_seconds,
        "started_at": attempt.started_at.isoformat() if attempt.started_at else None,
        "completed_at": attempt.completed_at.isoformat() if attempt.completed_at else None,
        "raw_score": float(score.raw_score) if score else None,
    }


@router.get("/api/attempts")
def list_attempts(
    user_id: Optional[str] = Query(None, description="Filter by user ID"),
    template_id: Optional[str] = Query(None, description="Filter by template ID"),
    status: Optional[str] = Query(None, description="Filter by status"),
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(20, ge=1, le=100, description="Results per page"),
    db: Session = Depends(get_db)
):
    """List attempts with filtering and pagination."""
    start_time = time.time()

    query = db.query(Attempt).options(
        joinedload(Attempt.template),
        joinedload(Attempt.score)
    )
    if user_id:
        query = query.filter(Attempt.user_id == user_id)
    if template_id:
        query = query.filter(Attempt.template_id == template_id)
    if status:
        query = query.filter(Attempt.status == status.lower())

    total_count = query.count()
    offset = (page - 1) * per_page
    attempts = query.order_by(Attempt.created_at.desc()).offset(offset).limit(per_page).all()

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Listed {} attempts (page {}, total {})".format(len(attempts), page, total_count),
        extra_data={"duration_ms": round(duration_ms, 2)})

    return {
        "data": [serialize_attempt_summary(a) for a in attempts],
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total_count,
            "total_pages": (total_count + per_page - 1) // per_page
        }
    }


@router.post("/api/attempts/start")
def start_attempt(payload: StartAttemptRequest, db: Session = Depends(get_db)):
    """Return the user's open attempt on the template, creating it if needed."""
    attempt = persistence.start_or_resume_attempt(db, payload.user_id, payload.template_id)
    return attempt_to_dict(persistence.to_core(attempt))


@router.get("/api/attempts/{attempt_id}")
def get_attempt(attempt_id: str, db: Session = Depends(get_db)):
    """Get the full attempt document, with grading once completed."""
    row = persistence.get_attempt_row(db, attempt_id)
    document = attempt_to_dict(persistence.to_core(row))
    document["score_breakdown"] = row.score.explanation_dict if row.score else None
    return document


@router.patch("/api/attempts/{attempt_id}/save-progress", response_model=SaveProgressResponse)
def save_progress(attempt_id: str, update: ProgressUpdate, db: Session = Depends(get_db)):
    """
    Apply one progress flush.

    `applied` is false when the flush arrived after a newer one; that is not
    an error, the sender just moves on.
    """
    applied = persistence.save_progress(db, attempt_id, update)
    attempt = persistence.get_attempt_row(db, attempt_id)
    return SaveProgressResponse(attempt_id=attempt_id, applied=applied,
                                last_sync_seq=attempt.last_sync_seq)


@router.post("/api/attempts/{attempt_id}/submit", response_model=SubmissionResult)
def submit_attempt(attempt_id: str, payload: Optional[SubmitRequest] = None,
                   db: Session = Depends(get_db)):
    """Grade and complete the attempt. Repeating a submit returns the same result."""
    start_time = time.time()
    trigger = (payload or SubmitRequest()).trigger
    result = persistence.submit_attempt(db, attempt_id, trigger)

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO", "Attempt submission acknowledged",
        context={"attempt_id": attempt_id},
        extra_data={"duration_ms": round(duration_ms, 2), "trigger": trigger.value})
    return result


@router.post("/api/attempts/{attempt_id}/cancel")
def cancel_attempt(attempt_id: str, db: Session = Depends(get_db)):
    """Cancel an open attempt."""
    attempt = persistence.cancel_attempt(db, attempt_id)
    return {"attempt_id": str(attempt.id), "status": attempt.status}
