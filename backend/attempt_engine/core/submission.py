"""
SubmissionCoordinator - finalizes an attempt.

Order: stop the clock, force a final section-end flush, hand off to the
grading boundary, then mark the attempt completed with the returned
stats. A failure at any step keeps every collected answer in memory and
raises SubmissionFailed so the caller can submit again; an automatic
submission after the last section timed out parks the attempt as expired
in the meantime.
"""

import time
from datetime import datetime, timezone

from attempt_engine.core.boundaries import PersistenceBoundary
from attempt_engine.core.clock import Clock
from attempt_engine.core.model import (
    Attempt, AttemptStatus, FlushReason, OverallStats, SubmissionTrigger,
)
from attempt_engine.core.sync import ProgressSync
from attempt_engine.errors import PersistenceFailure, StaleAttemptState, SubmissionFailed
from attempt_engine.logging_config import get_logger, log_with_context

logger = get_logger("engine")


class SubmissionCoordinator:
    """Final flush plus authoritative submit, at most once per attempt."""

    def __init__(self, attempt: Attempt, clock: Clock, sync: ProgressSync,
                 persistence: PersistenceBoundary):
        self.attempt = attempt
        self.clock = clock
        self.sync = sync
        self.persistence = persistence
        self.submit_calls = 0

    def can_submit(self) -> bool:
        """True while the attempt has no grading result and is in progress or expired."""
        if self.attempt.overall_stats is not None:
            return False
        return self.attempt.status in (AttemptStatus.IN_PROGRESS, AttemptStatus.EXPIRED)

    def submit(self, trigger: SubmissionTrigger) -> OverallStats:
        """
        Stop the clock, flush, and submit to storage.

        On success the attempt is COMPLETED with the grader's OverallStats. On
        PersistenceFailure it raises SubmissionFailed and keeps every answer; an
        AUTO_TIMEOUT failure also parks the attempt as EXPIRED.
        """
        attempt = self.attempt
        if not self.can_submit():
            raise StaleAttemptState(
                "Attempt {} is {} and cannot be submitted".format(attempt.id, attempt.status.value))

        context = {"attempt_id": attempt.id}
        start_time = time.time()
        log_with_context(logger, "INFO", "Submission requested",
            context=context, extra_data={"trigger": trigger.value})

        self.clock.stop()
        try:
            try:
                self.sync.flush(FlushReason.SECTION_END)
            except StaleAttemptState:
                # Storage already finalized it (an earlier submit whose reply was lost);
                # submit_attempt is idempotent and returns the stored result
                self.sync.discard_pending()
            self.submit_calls += 1
            result = self.persistence.submit_attempt(attempt.id, trigger)
        except PersistenceFailure as e:
            if trigger is SubmissionTrigger.AUTO_TIMEOUT:
                attempt.status = AttemptStatus.EXPIRED
            log_with_context(logger, "ERROR",
                "Submission failed, answers kept for retry: {}".format(e.message),
                context=context,
                extra_data={"trigger": trigger.value, "status": attempt.status.value})
            raise SubmissionFailed(
                "Submission did not complete; answers are saved locally, submit again",
                attempt_id=attempt.id) from e

        # overall_stats is written exactly once, from the authoritative grader
        attempt.overall_stats = result.overall_stats.to_stats()
        attempt.status = AttemptStatus.COMPLETED
        attempt.completed_at = datetime.now(timezone.utc)

        duration_ms = (time.time() - start_time) * 1000
        log_with_context(logger, "INFO",
            "Attempt completed: raw score {} ({} correct, {} incorrect, {} skipped)".format(
                attempt.overall_stats.raw_score, attempt.overall_stats.total_correct,
                attempt.overall_stats.total_incorrect, attempt.overall_stats.total_skipped),
            context=context,
            extra_data={"trigger": trigger.value, "duration_ms": round(duration_ms, 2)})
        return attempt.overall_stats
