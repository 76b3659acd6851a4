"""
AttemptScore model - stores the overall stats of a completed attempt.

Each completed attempt gets exactly one AttemptScore record containing:
- Raw counts (questions, attempted, correct, incorrect, skipped)
- The raw score with negative marking applied
- A per-section breakdown as JSON
"""

import json
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, Float, DateTime, ForeignKey, Text, String
from sqlalchemy.orm import relationship
from attempt_engine.database import Base


class AttemptScore(Base):
    """
    SQLAlchemy model for the attempt_scores table.

    One-to-one relationship with Attempt (attempt_id is both PK and FK).
    Written once, at submission; later submits return the stored row.
    """
    __tablename__ = "attempt_scores"

    attempt_id = Column(String(36), ForeignKey("attempts.id"), primary_key=True,
                        doc="Reference to the graded attempt (also serves as PK)")
    total_questions = Column(Integer, nullable=False, default=0)
    total_attempted = Column(Integer, nullable=False, default=0,
                             doc="Questions with a non-empty answer")
    total_correct = Column(Integer, nullable=False, default=0)
    total_incorrect = Column(Integer, nullable=False, default=0)
    total_skipped = Column(Integer, nullable=False, default=0,
                           doc="Questions left unanswered")
    raw_score = Column(Float, nullable=False, default=0,
                       doc="Sum of marks awarded, negative marking applied")
    computed_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    explanation = Column(Text, nullable=True,
                         doc="Per-section breakdown as JSON string")

    attempt = relationship("Attempt", back_populates="score")

    @property
    def explanation_dict(self):
        """Parse explanation JSON string to dict."""
        if isinstance(self.explanation, dict):
            return self.explanation
        try:
            return json.loads(self.explanation) if self.explanation else {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def __repr__(self):
        return f"<AttemptScore(attempt={self.attempt_id}, raw_score={self.raw_score})>"
