"""
Template API routes - authoring of test templates and their question bank.

This module implements:
1. POST /api/templates - create questions and an ordered template in one call
2. GET /api/templates/{id} - template with its sections and question ids

Question correctness keys are stored but never returned here; learners
only see them through a completed attempt.
"""

import time

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from attempt_engine.database import get_db
from attempt_engine.models.test_template import TestTemplate
from attempt_engine.schemas import TemplateIn
from attempt_engine.services.persistence import create_template, get_template
from attempt_engine.logging_config import get_logger, log_with_context

router = APIRouter()
logger = get_logger("http")


def serialize_template(template: TestTemplate) -> dict:
    """Serialize a TestTemplate ORM object to a dict for API response."""
    return {
        "id": str(template.id),
        "title": template.title,
        "exam_name": template.exam_name,
        "test_type": template.test_type,
        "created_at": template.created_at.isoformat() if template.created_at else None,
        "sections": [
            {
                "position": section.position,
                "name": section.name,
                "duration_seconds": section.duration_seconds,
                "timed": section.duration_seconds is not None,
                "question_ids": section.question_id_list,
            }
            for section in template.sections
        ],
    }


@router.post("/api/templates", status_code=201)
def create_test_template(payload: TemplateIn, db: Session = Depends(get_db)):
    """Create a test template, adding any new questions to the bank."""
    start_time = time.time()
    template = create_template(db, payload)

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Template created: {} ({} sections)".format(template.title, len(payload.sections)),
        context={"template_id": str(template.id)},
        extra_data={
            "duration_ms": round(duration_ms, 2),
            "questions": sum(len(s.questions) for s in payload.sections)
        })
    return serialize_template(template)


@router.get("/api/templates/{template_id}")
def get_test_template(template_id: str, db: Session = Depends(get_db)):
    """Get a test template with its ordered sections."""
    return serialize_template(get_template(db, template_id))
