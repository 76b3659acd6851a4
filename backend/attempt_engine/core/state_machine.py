"""
AttemptStateMachine - drives one attempt through its ordered sections.

NotStarted -> InProgress -> {Completed | Cancelled | Expired}

The machine is the single owner of its attempt: every intent and every
clock tick runs under one re-entrant lock, so a ticking clock thread and
request threads never interleave. Sections are entered strictly in
template order and never re-entered once completed. Navigation stays
inside the active section.

User intents against an ended section or a terminal attempt raise
StaleAttemptState. Clock-driven calls (ticks, expiry) degrade to no-ops.
"""

import functools
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from attempt_engine.config import FLUSH_INTERVAL_SECONDS
from attempt_engine.core.answers import AnswerStore
from attempt_engine.core.boundaries import PersistenceBoundary
from attempt_engine.core.clock import Clock
from attempt_engine.core.model import (
    Attempt, AttemptStatus, FlushReason, OverallStats, QuestionAttempt, SectionState,
    SectionStatus, SubmissionTrigger,
)
from attempt_engine.core.palette import PaletteEntry, build_palette, format_clock, section_summary
from attempt_engine.core.submission import SubmissionCoordinator
from attempt_engine.core.sync import ProgressSync
from attempt_engine.core.timer import SectionTimer
from attempt_engine.errors import (
    ClockDrift, ConfirmationRequired, InvalidOperation, StaleAttemptState, SubmissionFailed,
)
from attempt_engine.logging_config import get_logger, log_with_context
from attempt_engine.serialization import attempt_to_dict, question_to_dict

logger = get_logger("engine")

MANUAL = "manual"
AUTO = "auto"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransitionRecord:
    kind: str
    section_index: Optional[int]
    trigger: str
    at: datetime = field(default_factory=_now)


def synchronized(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class AttemptStateMachine:
    """
    Owns one attempt and turns intents and clock ticks into transitions.

    Construction validates the attempt and subscribes to the clock; nothing
    runs until start(). Collaborators are reachable as `answers`, `sync`,
    `coordinator` and `timer` (None before start()).
    """

    def __init__(self, attempt: Attempt, clock: Clock, persistence: PersistenceBoundary,
                 flush_interval: int = FLUSH_INTERVAL_SECONDS, background_sync: bool = False):
        if not attempt.sections:
            raise InvalidOperation("Attempt {} has no sections".format(attempt.id))
        if any(not section.questions for section in attempt.sections):
            raise InvalidOperation("Attempt {} has a section without questions".format(attempt.id))
        if not attempt.check_section_order():
            raise InvalidOperation(
                "Attempt {} has sections out of order; refusing to load".format(attempt.id))

        self.attempt = attempt
        self.clock = clock
        self.answers = AnswerStore(attempt)
        self.sync = ProgressSync(attempt, self.answers, persistence,
                                 interval_ticks=flush_interval, background=background_sync)
        self.coordinator = SubmissionCoordinator(attempt, clock, self.sync, persistence)
        self.persistence = persistence
        self.timer: Optional[SectionTimer] = None
        self.transitions: List[TransitionRecord] = []
        self._lock = threading.RLock()
        clock.subscribe(self.on_tick, self.on_drift)

    # ── read side ─────────────────────────────────────────────

    @property
    def status(self) -> AttemptStatus:
        return self.attempt.status

    @property
    def current_section(self) -> Optional[SectionState]:
        index = self.attempt.active_section_index
        return None if index is None else self.attempt.section(index)

    @property
    def current_question(self) -> Optional[QuestionAttempt]:
        section = self.current_section
        if section is None:
            return None
        return section.questions[self.attempt.current_question_index]

    def remaining_seconds(self) -> Optional[int]:
        if self.timer is None or self.current_section is None:
            return None
        return self.timer.remaining_seconds()

    @synchronized
    def palette(self) -> List[PaletteEntry]:
        section = self.attempt.section(self.attempt.current_section_index)
        current = self.attempt.current_question_index if self.current_section is not None else None
        return build_palette(section, current)

    @synchronized
    def summary(self) -> dict:
        return section_summary(self.attempt.section(self.attempt.current_section_index))

    @synchronized
    def view(self) -> dict:
        """Consistent snapshot of the attempt plus what the test screen shows."""
        document = attempt_to_dict(self.attempt)
        question = self.current_question
        remaining = self.remaining_seconds()
        document["session"] = {
            "section_index": self.attempt.active_section_index,
            "question_index": self.attempt.current_question_index if question is not None else None,
            "question": question_to_dict(question) if question is not None else None,
            "remaining_seconds": remaining,
            "clock": format_clock(remaining),
            "timer_running": bool(self.timer is not None and self.timer.running),
            "palette": [asdict(entry) for entry in self.palette()],
            "summary": self.summary(),
            "pending_flushes": self.sync.pending_count,
        }
        return document

    # ── lifecycle ─────────────────────────────────────────────

    @synchronized
    def start(self) -> None:
        """Start a fresh attempt or pick a persisted one back up."""
        attempt = self.attempt
        if attempt.status.is_terminal:
            raise StaleAttemptState("Attempt {} is already {}".format(attempt.id, attempt.status.value))
        self.sync.start()

        if attempt.status is AttemptStatus.NOT_STARTED:
            attempt.status = AttemptStatus.IN_PROGRESS
            attempt.started_at = attempt.started_at or _now()
            self._record("attempt_started", None, MANUAL)
            self._enter_section(0, FlushReason.MANUAL)
            return

        active = attempt.active_section_index
        if active is not None:
            self._resume_section(active)
            return

        # Section hand-offs are flushed atomically, so a completed section with
        # no active one left behind means a submit was issued but never acknowledged
        if any(s.status is SectionStatus.COMPLETED for s in attempt.sections):
            self._record("pending_submission_resumed", None, MANUAL)
            self._finalize(SubmissionTrigger.MANUAL)
            return
        self._enter_section(self._next_not_started(0), FlushReason.SECTION_END)

    def _enter_section(self, index: int, reason: FlushReason) -> None:
        attempt = self.attempt
        section = attempt.section(index)
        section.status = SectionStatus.IN_PROGRESS
        section.stamp_started(_now())
        attempt.current_section_index = index
        attempt.current_question_index = 0
        self.sync.mark_section_dirty(index)
        self._record("section_started", index, MANUAL)
        self.sync.request_flush(reason)
        self.clock.start()
        self._start_timer(section)

    def _resume_section(self, index: int) -> None:
        attempt = self.attempt
        section = attempt.section(index)
        attempt.current_section_index = index
        if not 0 <= attempt.current_question_index < len(section.questions):
            attempt.current_question_index = 0
        if section.started_at is None:
            section.stamp_started(_now())
            self.sync.mark_section_dirty(index)
        self._record("section_resumed", index, MANUAL)
        self.clock.start()
        # Remaining time comes from the persisted per-question totals, so an
        # exhausted section expires right here instead of granting time
        self._start_timer(section)

    def _start_timer(self, section: SectionState) -> None:
        self.timer = SectionTimer(section.duration_seconds, section.time_used_seconds,
                                  on_expired=self.time_expired)
        self.timer.start()

    def _next_not_started(self, start: int) -> Optional[int]:
        for index in range(start, len(self.attempt.sections)):
            if self.attempt.section(index).status is SectionStatus.NOT_STARTED:
                return index
        return None

    # ── intents ───────────────────────────────────────────────

    def _require_active_section(self) -> int:
        attempt = self.attempt
        if attempt.status is AttemptStatus.NOT_STARTED:
            raise InvalidOperation("Attempt {} has not been started".format(attempt.id))
        if attempt.status is not AttemptStatus.IN_PROGRESS:
            raise StaleAttemptState(
                "Attempt {} is {}; refresh and retry".format(attempt.id, attempt.status.value))
        index = attempt.active_section_index
        if index is None:
            raise StaleAttemptState("No section is in progress; refresh and retry")
        return index

    @synchronized
    def answer_question(self, payload) -> QuestionAttempt:
        """Apply an answer to the displayed question: int selects, str writes, None clears."""
        section_index = self._require_active_section()
        question_index = self.attempt.current_question_index
        if payload is None:
            return self.answers.clear_selection(section_index, question_index)
        if isinstance(payload, str):
            return self.answers.set_text(section_index, question_index, payload)
        return self.answers.set_selection(section_index, question_index, payload)

    @synchronized
    def select_option(self, option_index: int) -> QuestionAttempt:
        """Select an option on the displayed question."""
        section_index = self._require_active_section()
        return self.answers.set_selection(section_index, self.attempt.current_question_index, option_index)

    @synchronized
    def write_text(self, value: str) -> QuestionAttempt:
        """Store free text for the displayed question."""
        section_index = self._require_active_section()
        return self.answers.set_text(section_index, self.attempt.current_question_index, value)

    @synchronized
    def toggle_review(self) -> QuestionAttempt:
        """Flip the marked-for-review flag on the displayed question."""
        section_index = self._require_active_section()
        return self.answers.toggle_marked_for_review(section_index, self.attempt.current_question_index)

    @synchronized
    def navigate(self, target_question_index: int) -> None:
        """
        Move to another question of the active section.

        The question being left is flushed first. Indices outside the active
        section raise InvalidOperation; completed sections stay closed.
        """
        section_index = self._require_active_section()
        section = self.attempt.section(section_index)
        if isinstance(target_question_index, bool) or not isinstance(target_question_index, int):
            raise InvalidOperation("Question index must be an integer")
        if not 0 <= target_question_index < len(section.questions):
            raise InvalidOperation(
                "Question {} is outside section {} (0..{}); sections cannot be revisited".format(
                    target_question_index, section_index, len(section.questions) - 1))
        if target_question_index == self.attempt.current_question_index:
            return
        self.sync.request_flush(FlushReason.NAVIGATION, question_index=target_question_index)
        self.attempt.current_question_index = target_question_index

    @synchronized
    def end_section(self, confirm: bool = False) -> None:
        """
        End the active section and enter the next one, or submit after the last.

        Raises ConfirmationRequired unless confirm is True.
        """
        self._require_active_section()
        if not confirm:
            raise ConfirmationRequired("Ending a section is irrevocable; confirm to continue")
        self._close_current_section(MANUAL)

    @synchronized
    def time_expired(self) -> None:
        """Fired by the SectionTimer. Same as end_section, without confirmation."""
        if self.attempt.status is not AttemptStatus.IN_PROGRESS or self.attempt.active_section_index is None:
            return
        try:
            self._close_current_section(AUTO)
        except SubmissionFailed:
            # Already logged; the attempt is parked as expired until submit() is retried
            pass

    @synchronized
    def submit(self) -> OverallStats:
        """
        End the active section if any and submit the attempt.

        An EXPIRED attempt whose auto-submit failed is submitted again here.
        Raises SubmissionFailed if storage does not acknowledge; the call can be
        repeated.
        """
        attempt = self.attempt
        if attempt.status is AttemptStatus.EXPIRED and self.coordinator.can_submit():
            return self._finalize(SubmissionTrigger.AUTO_TIMEOUT)
        if attempt.status is AttemptStatus.NOT_STARTED:
            raise InvalidOperation("Attempt {} has not been started".format(attempt.id))
        if attempt.status is not AttemptStatus.IN_PROGRESS:
            raise StaleAttemptState(
                "Attempt {} is {}; refresh and retry".format(attempt.id, attempt.status.value))
        if attempt.active_section_index is not None:
            self._end_active_section(MANUAL)
        return self._finalize(SubmissionTrigger.MANUAL)

    @synchronized
    def cancel(self) -> None:
        """
        Cancel the attempt for good.

        Progress is flushed and storage marks the attempt cancelled before
        anything stops locally. If either write raises PersistenceFailure
        the attempt is still in progress with its clock and timer running,
        and cancel() can be called again.
        """
        attempt = self.attempt
        if attempt.status.is_terminal:
            raise StaleAttemptState("Attempt {} is already {}".format(attempt.id, attempt.status.value))
        self.sync.flush(FlushReason.MANUAL)
        self.persistence.cancel_attempt(attempt.id)
        if self.timer is not None:
            self.timer.stop()
        self.clock.stop()
        attempt.status = AttemptStatus.CANCELLED
        self.sync.stop()
        self._record("attempt_cancelled", attempt.active_section_index, MANUAL)

    @synchronized
    def pause(self) -> None:
        """Stop the section timer and flush."""
        self._require_active_section()
        self.timer.pause()
        self.clock.pause()
        self.sync.request_flush(FlushReason.MANUAL)

    @synchronized
    def resume(self) -> None:
        self._require_active_section()
        self.clock.resume()
        self.timer.resume()

    @synchronized
    def toggle_timer(self) -> bool:
        """Pause if running, otherwise resume. Returns the new running state."""
        if self.timer is not None and self.timer.running:
            self.pause()
            return False
        self.resume()
        return True

    @synchronized
    def flush(self, reason: FlushReason = FlushReason.MANUAL):
        """Explicit save; raises PersistenceFailure so the caller can retry."""
        return self.sync.flush(reason)

    @synchronized
    def abandon(self) -> None:
        """Caller walks away without submitting. State already flushed stays resumable."""
        if self.timer is not None:
            self.timer.pause()
        self.clock.stop()
        if self.attempt.status is AttemptStatus.IN_PROGRESS:
            self.sync.request_flush(FlushReason.MANUAL)
        self.sync.stop()

    # ── transitions ───────────────────────────────────────────

    def _end_active_section(self, trigger: str) -> int:
        attempt = self.attempt
        index = attempt.active_section_index
        section = attempt.section(index)
        section.status = SectionStatus.COMPLETED
        section.stamp_ended(_now())
        if self.timer is not None:
            self.timer.stop()
        self.answers.mark_dirty(index, attempt.current_question_index)
        self.sync.mark_section_dirty(index)
        self._record("section_ended", index, trigger)
        return index

    def _close_current_section(self, trigger: str) -> None:
        index = self._end_active_section(trigger)
        if index == len(self.attempt.sections) - 1:
            self._finalize(SubmissionTrigger.AUTO_TIMEOUT if trigger == AUTO else SubmissionTrigger.MANUAL)
            return
        self._enter_section(index + 1, FlushReason.SECTION_END)

    def _finalize(self, trigger: SubmissionTrigger) -> OverallStats:
        self._record("submission", None, AUTO if trigger is SubmissionTrigger.AUTO_TIMEOUT else MANUAL)
        stats = self.coordinator.submit(trigger)
        self.sync.stop()
        return stats

    # ── clock ─────────────────────────────────────────────────

    @synchronized
    def on_tick(self) -> None:
        """One clock second: charge it to the displayed question and the section timer."""
        attempt = self.attempt
        if attempt.status is not AttemptStatus.IN_PROGRESS or self.timer is None:
            return
        section_index = attempt.active_section_index
        if section_index is None or not self.timer.accepts_tick():
            return
        if not self.answers.record_tick(section_index, attempt.current_question_index):
            return
        self.sync.on_tick()
        self.timer.tick()

    @synchronized
    def on_drift(self, drift: ClockDrift) -> None:
        """Clock jumped; rebuild remaining time from recorded per-question time."""
        section = self.current_section
        if section is None or self.timer is None:
            return
        log_with_context(logger, "WARNING",
            "Clock drift of {:.1f}s; remaining time recomputed from recorded time".format(drift.gap_seconds),
            context={"attempt_id": self.attempt.id, "section_index": self.attempt.current_section_index},
            extra_data={"remaining_seconds": section.remaining_seconds})
        self.timer.resync(section.time_used_seconds)
        if self.attempt.status is AttemptStatus.IN_PROGRESS:
            self.sync.request_flush(FlushReason.PERIODIC)

    def _record(self, kind: str, section_index: Optional[int], trigger: str) -> None:
        self.transitions.append(TransitionRecord(kind, section_index, trigger))
        log_with_context(logger, "INFO", "Transition: {}".format(kind),
            context={"attempt_id": self.attempt.id, "section_index": section_index},
            extra_data={"trigger": trigger, "status": self.attempt.status.value})
