import os
import tempfile

# Point the app at a throwaway SQLite file before attempt_engine.database is imported
_DB_DIR = tempfile.mkdtemp(prefix="attempt-engine-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_DB_DIR, "engine.db")

import pytest  # noqa: E402

from attempt_engine.core.clock import ManualClock  # noqa: E402
from attempt_engine.core.model import (  # noqa: E402
    Attempt, AttemptStatus, QuestionAttempt, QuestionContent, QuestionKind, SectionState,
    SectionStatus, SubmissionTrigger,
)
from attempt_engine.core.state_machine import AttemptStateMachine  # noqa: E402
from attempt_engine.errors import PersistenceFailure, StaleAttemptState  # noqa: E402
from attempt_engine.database import SessionLocal, create_tables  # noqa: E402
from attempt_engine.schemas import (  # noqa: E402
    OverallStatsSchema, QuestionIn, SectionIn, SubmissionResult, TemplateIn,
)
from attempt_engine.services.persistence import create_template  # noqa: E402

OPTIONS = ("A", "B", "C", "D")


def make_section(name, duration=60, kinds=("single_select",) * 3, status="not_started"):
    questions = []
    for index, kind in enumerate(kinds):
        kind = QuestionKind(kind)
        qid = "{}-q{}".format(name.lower().replace(" ", "-"), index + 1)
        questions.append(QuestionAttempt(
            order=index + 1,
            question_id=qid,
            kind=kind,
            content=QuestionContent(
                question_id=qid,
                kind=kind,
                prompt="Question {}".format(index + 1),
                options=OPTIONS if kind is QuestionKind.SINGLE_SELECT else (),
            ),
        ))
    return SectionState(name=name, duration_seconds=duration, questions=questions,
                        status=SectionStatus(status))


def make_attempt(*sections, attempt_id="attempt-1", **kwargs):
    if not sections:
        sections = (make_section("Verbal"), make_section("Quant"))
    return Attempt(id=attempt_id, user_id="user-1", template_id="template-1",
                   sections=list(sections), **kwargs)


class FakePersistence:
    """In-memory storage that applies the same sequence rule as the database."""

    def __init__(self, attempt=None, answer_key=None):
        self.attempt = attempt
        self.answer_key = answer_key or {}
        self.saved = []
        self.discarded = []
        self.questions = {}
        self.last_seq = 0
        self.status = "in_progress"
        self.fail_saves = 0
        self.fail_submits = 0
        self.fail_cancels = 0
        self.submit_calls = []
        self.cancelled = []
        self.result = None

    def start_or_resume_attempt(self, user_id, template_id):
        return self.attempt

    def load_attempt_detail(self, attempt_id):
        return self.attempt

    def save_progress(self, attempt_id, update):
        if self.fail_saves:
            self.fail_saves -= 1
            raise PersistenceFailure("storage offline")
        if self.status in ("completed", "cancelled"):
            raise StaleAttemptState("attempt is {}".format(self.status))
        if update.sequence <= self.last_seq:
            self.discarded.append(update)
            return False
        self.last_seq = update.sequence
        self.saved.append(update)
        for item in update.updates:
            self.questions[(item.section_index, item.question_index)] = item
        return True

    def submit_attempt(self, attempt_id, trigger):
        self.submit_calls.append(trigger)
        if self.result is not None:
            return self.result
        if self.fail_submits:
            self.fail_submits -= 1
            raise PersistenceFailure("grader offline")
        total = sum(len(s.questions) for s in self.attempt.sections) if self.attempt else len(self.questions)
        attempted = [key for key, item in self.questions.items() if item.is_answered]
        correct = [key for key in attempted
                   if key in self.answer_key
                   and self.questions[key].selected_option_index == self.answer_key[key]]
        incorrect = [key for key in attempted if key in self.answer_key and key not in correct]
        self.status = "completed"
        self.result = SubmissionResult(
            attempt_id=attempt_id,
            status=AttemptStatus.COMPLETED,
            overall_stats=OverallStatsSchema(
                total_questions=total,
                total_attempted=len(attempted),
                total_correct=len(correct),
                total_incorrect=len(incorrect),
                total_skipped=total - len(attempted),
                raw_score=float(len(correct)),
            ),
        )
        return self.result

    def cancel_attempt(self, attempt_id):
        if self.fail_cancels:
            self.fail_cancels -= 1
            raise PersistenceFailure("storage offline")
        self.cancelled.append(attempt_id)
        self.status = "cancelled"

    @property
    def auto_submits(self):
        return [t for t in self.submit_calls if t is SubmissionTrigger.AUTO_TIMEOUT]


@pytest.fixture
def build_engine():
    """Build (machine, clock, persistence) for an attempt; nothing is started."""
    def _build(attempt=None, persistence=None, flush_interval=15, answer_key=None):
        attempt = attempt or make_attempt()
        persistence = persistence or FakePersistence(attempt, answer_key=answer_key)
        clock = ManualClock()
        machine = AttemptStateMachine(attempt, clock, persistence, flush_interval=flush_interval)
        return machine, clock, persistence
    return _build


@pytest.fixture
def started_engine(build_engine):
    machine, clock, persistence = build_engine()
    machine.start()
    return machine, clock, persistence


def template_payload(title="Practice Test"):
    """Timed two-question verbal section plus an untimed essay section."""
    return TemplateIn(title=title, exam_name="GRE", sections=[
        SectionIn(name="Verbal", duration_minutes=1, questions=[
            QuestionIn(question_text="Pick the synonym", options=["a", "b", "c", "d"],
                       correct_option_index=1, marks=2, negative_marks=0.5),
            QuestionIn(question_text="Pick the antonym", options=["a", "b"],
                       correct_option_index=0, negative_marks=0.25),
        ]),
        SectionIn(name="Writing", questions=[
            QuestionIn(question_type="essay", question_text="Argue a position"),
        ]),
    ])


@pytest.fixture(scope="session")
def database():
    create_tables()


@pytest.fixture
def db(database):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def template_id(db):
    return create_template(db, template_payload()).id
