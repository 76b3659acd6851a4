"""
ProgressSync - batches in-memory attempt deltas to the persistence boundary.

Snapshots are taken synchronously, under the state machine's lock, and
queued with a monotonic sequence number. Delivery is strictly in order and
at-least-once: a failed write stays at the head of the queue and is
retried, and nothing in memory is rolled back. Storage discards any write
whose sequence it has already passed.

In inline mode a requested flush is delivered immediately and a failure is
only logged. In background mode a worker thread drains the queue so intents
never wait on storage; hosted sessions run this way unless BACKGROUND_SYNC
is turned off.
"""

import threading
import time
from collections import deque
from typing import Optional

from attempt_engine.config import FLUSH_INTERVAL_SECONDS, SYNC_RETRY_DELAY_SECONDS
from attempt_engine.core.answers import AnswerStore
from attempt_engine.core.boundaries import PersistenceBoundary
from attempt_engine.core.model import Attempt, FlushReason, QuestionKind
from attempt_engine.errors import PersistenceFailure
from attempt_engine.logging_config import get_logger, log_with_context
from attempt_engine.schemas import ProgressUpdate, QuestionUpdate, SectionUpdate

logger = get_logger("sync")


class ProgressSync:
    """Ordered, sequenced flush queue for one attempt."""

    def __init__(self, attempt: Attempt, answer_store: AnswerStore,
                 persistence: PersistenceBoundary,
                 interval_ticks: int = FLUSH_INTERVAL_SECONDS,
                 background: bool = False,
                 retry_delay: float = SYNC_RETRY_DELAY_SECONDS):
        self.attempt = attempt
        self.answer_store = answer_store
        self.persistence = persistence
        self.interval_ticks = interval_ticks
        self.background = background
        self.retry_delay = retry_delay

        self.last_sequence = attempt.last_sync_seq
        self.last_delivered_sequence = attempt.last_sync_seq
        self.delivered = 0
        self.discarded = 0

        self._pending = deque()
        self._dirty_sections = set()
        self._ticks_since_flush = 0
        self._send_lock = threading.Lock()
        self._cond = threading.Condition()
        self._stop_event = threading.Event()
        self._worker = None

    # ── snapshotting ──────────────────────────────────────────

    def mark_section_dirty(self, section_index: int) -> None:
        self._dirty_sections.add(section_index)

    def snapshot(self, reason: FlushReason, question_index: Optional[int] = None) -> ProgressUpdate:
        """Capture pending deltas; `question_index` overrides the saved cursor."""
        attempt = self.attempt
        updates = []
        for section_index, q_index in self.answer_store.take_dirty():
            question = attempt.question(section_index, q_index)
            if question.kind is QuestionKind.SINGLE_SELECT:
                selected, text = question.answer.selected_option_index, None
            else:
                selected, text = None, question.answer.text
            updates.append(QuestionUpdate(
                section_index=section_index,
                question_index=q_index,
                selected_option_index=selected,
                answer_text=text,
                is_answered=question.is_answered,
                marked_for_review=question.marked_for_review,
                time_spent_seconds=question.time_spent_seconds,
            ))

        sections = []
        for section_index in sorted(self._dirty_sections):
            section = attempt.section(section_index)
            sections.append(SectionUpdate(
                section_index=section_index,
                status=section.status,
                started_at=section.started_at,
                ended_at=section.ended_at,
            ))
        self._dirty_sections.clear()

        self.last_sequence += 1
        return ProgressUpdate(
            sequence=self.last_sequence,
            reason=reason,
            status=attempt.status,
            started_at=attempt.started_at,
            updates=updates,
            sections=sections,
            total_time_used_seconds=attempt.total_time_used_seconds,
            current_section_index=attempt.current_section_index,
            current_question_index=(
                attempt.current_question_index if question_index is None else question_index),
        )

    # ── flushing ──────────────────────────────────────────────

    def request_flush(self, reason: FlushReason, question_index: Optional[int] = None) -> ProgressUpdate:
        """Queue a snapshot without blocking the caller on a failed write."""
        update = self._enqueue(self.snapshot(reason, question_index))
        if not self.background:
            try:
                self.drain()
            except PersistenceFailure:
                # Left at the head of the queue; the next flush retries it
                pass
        return update

    def flush(self, reason: FlushReason) -> ProgressUpdate:
        """Queue a snapshot and deliver everything now; raises PersistenceFailure."""
        update = self._enqueue(self.snapshot(reason))
        self.drain()
        return update

    def _enqueue(self, update: ProgressUpdate) -> ProgressUpdate:
        self._ticks_since_flush = 0
        with self._cond:
            self._pending.append(update)
            self._cond.notify_all()
        return update

    def drain(self) -> None:
        """Deliver queued snapshots in sequence order, stopping at the first failure."""
        with self._send_lock:
            while True:
                with self._cond:
                    if not self._pending:
                        self._cond.notify_all()
                        return
                    update = self._pending[0]
                started = time.time()
                try:
                    applied = self.persistence.save_progress(self.attempt.id, update)
                except PersistenceFailure as e:
                    log_with_context(logger, "WARNING",
                        "Flush #{} failed, {} pending: {}".format(update.sequence, self.pending_count, e.message),
                        context={"attempt_id": self.attempt.id},
                        extra_data={"reason": update.reason.value, "sequence": update.sequence})
                    raise
                with self._cond:
                    self._pending.popleft()
                    self._cond.notify_all()
                self.last_delivered_sequence = update.sequence
                if applied:
                    self.delivered += 1
                else:
                    self.discarded += 1
                log_with_context(logger, "DEBUG" if applied else "WARNING",
                    "Flush #{} {}".format(update.sequence, "applied" if applied else "discarded as out of order"),
                    context={"attempt_id": self.attempt.id},
                    extra_data={
                        "reason": update.reason.value,
                        "sequence": update.sequence,
                        "questions": len(update.updates),
                        "duration_ms": round((time.time() - started) * 1000, 2),
                    })

    def on_tick(self) -> None:
        """Periodic flush every `interval_ticks` ticks bounds loss on a crash."""
        self._ticks_since_flush += 1
        if self.interval_ticks and self._ticks_since_flush >= self.interval_ticks:
            self.request_flush(FlushReason.PERIODIC)

    def discard_pending(self) -> int:
        with self._cond:
            dropped = len(self._pending)
            self._pending.clear()
            self._cond.notify_all()
        return dropped

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    # ── background worker ─────────────────────────────────────

    def start(self) -> None:
        """Spawn the worker thread in background mode; no-op inline."""
        if not self.background or self._worker is not None:
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="progress-sync", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Join the worker, then try once more to deliver anything still queued."""
        if self._worker is None:
            return
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        self._worker.join(timeout=timeout)
        self._worker = None
        if self.pending_count:
            try:
                self.drain()
            except PersistenceFailure:
                # Still queued; a later flush() from the owner retries it
                pass

    def wait_until_idle(self, timeout: float = 5.0) -> bool:
        """Block until the queue is empty. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            with self._cond:
                while not self._pending and not self._stop_event.is_set():
                    self._cond.wait()
            if self._stop_event.is_set():
                return
            try:
                self.drain()
            except PersistenceFailure:
                self._stop_event.wait(self.retry_delay)
