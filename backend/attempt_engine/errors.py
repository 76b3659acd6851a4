"""
Error taxonomy for the attempt engine.

Local errors (InvalidOperation, StaleAttemptState) are raised synchronously
to the caller. PersistenceFailure is transient: in-memory state stays the
source of truth and the caller may retry. ClockDrift is reported to drift
listeners and resolved by clamping, it never reaches API callers.
"""


class AttemptEngineError(Exception):
    """Base class for every error raised by the engine."""

    status_code = 400
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "error": type(self).__name__,
            "retryable": self.retryable,
        }


class StaleAttemptState(AttemptEngineError):
    """Mutation against an ended section or a terminal attempt. Refresh and retry."""

    status_code = 409


class InvalidOperation(AttemptEngineError):
    """Wrong answer setter for the question kind, bad index, or illegal transition."""

    status_code = 400


class ConfirmationRequired(InvalidOperation):
    """Irrevocable step (ending a section) called without explicit confirmation."""


class NotFound(AttemptEngineError):
    status_code = 404


class AttemptNotFound(NotFound):
    pass


class PersistenceFailure(AttemptEngineError):
    """Transient storage/API failure during flush or submit."""

    status_code = 503
    retryable = True


class SubmissionFailed(PersistenceFailure):
    """Final submission did not complete. Answers are intact; submit again."""


class ClockDrift(AttemptEngineError):
    """Wall-clock gap between clock wake-ups, e.g. a suspended host or tab."""

    def __init__(self, gap_seconds: float, threshold_seconds: float):
        super().__init__(
            "Clock gap of {:.1f}s exceeds {:.1f}s threshold".format(gap_seconds, threshold_seconds),
            gap_seconds=gap_seconds,
        )
        self.gap_seconds = gap_seconds
        self.threshold_seconds = threshold_seconds
