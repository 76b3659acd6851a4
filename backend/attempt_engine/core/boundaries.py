"""
Contracts for the collaborators the engine consumes.

The persistence boundary is the storage/API layer; `submit_attempt` also
fronts the authoritative grading boundary, whose output reaches the engine
only as OverallStats. Two implementations ship: SqlPersistence (in-process
database) and HttpPersistence (remote REST API).
"""

from typing import Optional, Protocol

from attempt_engine.core.model import Attempt, QuestionContent, SubmissionTrigger
from attempt_engine.schemas import ProgressUpdate, SubmissionResult


class QuestionBank(Protocol):

    def get_question(self, question_id: str) -> Optional[QuestionContent]:
        ...


class PersistenceBoundary(Protocol):

    def start_or_resume_attempt(self, user_id: str, template_id: str) -> Attempt:
        ...

    def load_attempt_detail(self, attempt_id: str) -> Attempt:
        ...

    def save_progress(self, attempt_id: str, update: ProgressUpdate) -> bool:
        """Apply a flush. Returns False when discarded as out of order."""
        ...

    def submit_attempt(self, attempt_id: str, trigger: SubmissionTrigger) -> SubmissionResult:
        ...

    def cancel_attempt(self, attempt_id: str) -> None:
        ...
