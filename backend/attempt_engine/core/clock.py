"""
Clock - the only time source that may advance attempt time accounting.

Listeners receive one call per tick while the clock is running. Ticks that
arrive while paused are dropped. Elapsed time is never inferred from
wall-clock deltas: after a suspended host wakes up the clock emits a single
tick and reports a ClockDrift instead of replaying the missed seconds.
"""

import threading
import time
from enum import Enum
from typing import Callable, List

from attempt_engine.config import CLOCK_DRIFT_THRESHOLD_SECONDS
from attempt_engine.errors import ClockDrift, InvalidOperation
from attempt_engine.logging_config import get_logger, log_with_context

logger = get_logger("clock")

TickListener = Callable[[], None]
DriftListener = Callable[[ClockDrift], None]


class ClockState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Clock:
    """Base clock: lifecycle and listener fan-out. Subclasses produce ticks."""

    def __init__(self):
        self.state = ClockState.IDLE
        self._tick_listeners: List[TickListener] = []
        self._drift_listeners: List[DriftListener] = []

    @property
    def running(self) -> bool:
        return self.state is ClockState.RUNNING

    def subscribe(self, on_tick: TickListener, on_drift: DriftListener = None) -> None:
        """Register tick and drift listeners; they run on the ticking thread."""
        self._tick_listeners.append(on_tick)
        if on_drift is not None:
            self._drift_listeners.append(on_drift)

    def start(self) -> None:
        if self.state is ClockState.STOPPED:
            raise InvalidOperation("Clock has been stopped")
        if self.state is ClockState.IDLE:
            self.state = ClockState.RUNNING
            self._on_start()
        elif self.state is ClockState.PAUSED:
            self.resume()

    def pause(self) -> None:
        if self.state is ClockState.RUNNING:
            self.state = ClockState.PAUSED

    def resume(self) -> None:
        if self.state is ClockState.PAUSED:
            self.state = ClockState.RUNNING

    def stop(self) -> None:
        """Final. A stopped clock cannot be started again."""
        if self.state is ClockState.STOPPED:
            return
        self.state = ClockState.STOPPED
        self._on_stop()

    def _on_start(self) -> None:
        pass

    def _on_stop(self) -> None:
        pass

    def _emit_tick(self) -> bool:
        if not self.running:
            return False
        for listener in list(self._tick_listeners):
            listener()
        return True

    def _emit_drift(self, drift: ClockDrift) -> None:
        for listener in list(self._drift_listeners):
            listener(drift)


class ManualClock(Clock):
    """Deterministic clock that ticks on demand. Used by tests and replays."""

    def advance(self, seconds: int = 1) -> int:
        """Deliver `seconds` ticks; returns how many were not dropped."""
        delivered = 0
        for _ in range(seconds):
            if self._emit_tick():
                delivered += 1
        return delivered

    def report_drift(self, gap_seconds: float) -> None:
        self._emit_drift(ClockDrift(gap_seconds, CLOCK_DRIFT_THRESHOLD_SECONDS))


class IntervalClock(Clock):
    """Wall-clock ticker on a daemon thread, one tick per `interval` seconds."""

    def __init__(self, interval: float = 1.0, drift_threshold: float = CLOCK_DRIFT_THRESHOLD_SECONDS):
        super().__init__()
        self.interval = interval
        self.drift_threshold = drift_threshold
        self._stop_event = threading.Event()
        self._thread = None

    def _on_start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="attempt-clock", daemon=True)
        self._thread.start()

    def _on_stop(self) -> None:
        self._stop_event.set()
        # stop() may be called from a tick listener on the clock thread itself
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval * 2)

    def _run(self) -> None:
        last = time.monotonic()
        while not self._stop_event.wait(self.interval):
            now = time.monotonic()
            gap = now - last
            last = now
            if gap > self.drift_threshold:
                drift = ClockDrift(gap, self.drift_threshold)
                log_with_context(logger, "WARNING", drift.message,
                    extra_data={"gap_seconds": round(gap, 3)})
                self._emit_drift(drift)
            try:
                self._emit_tick()
            except Exception:
                # A failing listener must not kill the ticker
                log_with_context(logger, "ERROR", "Tick listener raised", exc_info=True)
