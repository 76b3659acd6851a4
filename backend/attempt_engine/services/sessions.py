"""
Session Registry - hosts one AttemptStateMachine per attempt on the server.

Each hosted attempt gets its own clock, so time keeps accruing between
requests exactly as it would on a learner's device. The registry is the
single owner of each machine: repeated opens for the same attempt return
the same instance instead of a second engine racing on the same rows.
"""

import threading
from typing import Callable, Dict

from attempt_engine.config import BACKGROUND_SYNC, FLUSH_INTERVAL_SECONDS
from attempt_engine.core.boundaries import PersistenceBoundary
from attempt_engine.core.clock import Clock, IntervalClock
from attempt_engine.core.state_machine import AttemptStateMachine
from attempt_engine.logging_config import get_logger, log_with_context
from attempt_engine.services.persistence import SqlPersistence

logger = get_logger("engine")


class SessionRegistry:
    """
    In-process map of attempt id to its hosted AttemptStateMachine.

    Machines are created on first open()/get() and dropped by close(). With
    background_sync each one saves progress on its own worker thread.
    """

    def __init__(self, persistence: PersistenceBoundary,
                 clock_factory: Callable[[], Clock] = IntervalClock,
                 flush_interval: int = FLUSH_INTERVAL_SECONDS,
                 background_sync: bool = BACKGROUND_SYNC):
        self.persistence = persistence
        self.clock_factory = clock_factory
        self.flush_interval = flush_interval
        self.background_sync = background_sync
        self._sessions: Dict[str, AttemptStateMachine] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _host(self, attempt) -> AttemptStateMachine:
        machine = AttemptStateMachine(attempt, self.clock_factory(), self.persistence,
                                      flush_interval=self.flush_interval,
                                      background_sync=self.background_sync)
        if not attempt.status.is_terminal:
            machine.start()
        self._sessions[attempt.id] = machine
        log_with_context(logger, "INFO", "Hosting attempt session",
                        context={"attempt_id": attempt.id, "user_id": attempt.user_id},
                        extra_data={"status": machine.status.value, "sessions": len(self._sessions)})
        return machine

    def open(self, user_id: str, template_id: str) -> AttemptStateMachine:
        """Start or resume the user's attempt on a template."""
        attempt = self.persistence.start_or_resume_attempt(user_id, template_id)
        with self._lock:
            existing = self._sessions.get(attempt.id)
            if existing is not None and not existing.status.is_terminal:
                return existing
            return self._host(attempt)

    def get(self, attempt_id: str) -> AttemptStateMachine:
        """Hosted machine for an attempt, reloading it from storage if needed."""
        with self._lock:
            machine = self._sessions.get(attempt_id)
            if machine is not None:
                return machine
            attempt = self.persistence.load_attempt_detail(attempt_id)
            return self._host(attempt)

    def close(self, attempt_id: str) -> bool:
        """Abandon and drop a hosted session. Returns False if none was hosted."""
        with self._lock:
            machine = self._sessions.pop(attempt_id, None)
        if machine is None:
            return False
        machine.abandon()
        log_with_context(logger, "INFO", "Closed attempt session",
                        context={"attempt_id": attempt_id},
                        extra_data={"status": machine.status.value})
        return True

    def shutdown(self) -> None:
        """Close every hosted session, flushing what each one still holds."""
        with self._lock:
            attempt_ids = list(self._sessions)
        for attempt_id in attempt_ids:
            self.close(attempt_id)


_registry = None


def get_registry() -> SessionRegistry:
    """FastAPI dependency; the app-wide registry over the local database."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry(SqlPersistence())
    return _registry
