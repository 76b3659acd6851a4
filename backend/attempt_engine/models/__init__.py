from attempt_engine.models.test_template import Question, TestTemplate, TemplateSection
from attempt_engine.models.attempt import Attempt, AttemptSection, AttemptQuestion
from attempt_engine.models.attempt_score import AttemptScore

__all__ = [
    "Question", "TestTemplate", "TemplateSection",
    "Attempt", "AttemptSection", "AttemptQuestion", "AttemptScore",
]
