import itertools
import threading
from types import SimpleNamespace

import pytest

from attempt_engine.core import clock as clock_module
from attempt_engine.core.clock import ClockState, IntervalClock, ManualClock
from attempt_engine.errors import ClockDrift, InvalidOperation


def test_manual_clock_ticks_only_while_running():
    clock = ManualClock()
    ticks = []
    clock.subscribe(lambda: ticks.append(1))

    assert clock.advance(3) == 0
    clock.start()
    assert clock.advance(3) == 3
    clock.pause()
    clock.pause()
    assert clock.advance(5) == 0
    clock.resume()
    assert clock.advance(1) == 1
    assert len(ticks) == 4


def test_stopped_clock_stays_stopped():
    clock = ManualClock()
    clock.start()
    clock.stop()
    clock.stop()
    assert clock.state is ClockState.STOPPED
    assert clock.advance(2) == 0
    with pytest.raises(InvalidOperation):
        clock.start()


def test_manual_clock_reports_drift_to_listeners():
    clock = ManualClock()
    drifts = []
    clock.subscribe(lambda: None, drifts.append)
    clock.report_drift(42.0)
    assert len(drifts) == 1
    assert isinstance(drifts[0], ClockDrift)
    assert drifts[0].gap_seconds == 42.0


def test_interval_clock_ticks_on_its_own_thread():
    clock = IntervalClock(interval=0.01)
    seen = threading.Event()
    threads = []

    def on_tick():
        threads.append(threading.current_thread().name)
        if len(threads) >= 3:
            seen.set()

    clock.subscribe(on_tick)
    clock.start()
    try:
        assert seen.wait(2.0)
    finally:
        clock.stop()
    assert set(threads) == {"attempt-clock"}


def test_interval_clock_reports_gap_without_replaying_ticks(monkeypatch):
    # Wake-ups at t=1, 2, then a 10s suspend, then steady again
    readings = itertools.chain([0.0, 1.0, 2.0, 12.0], itertools.count(13.0))
    monkeypatch.setattr(clock_module, "time", SimpleNamespace(monotonic=lambda: next(readings)))

    clock = IntervalClock(interval=0.005, drift_threshold=3)
    drifts = []
    ticks = []
    done = threading.Event()

    def on_tick():
        ticks.append(1)
        if len(ticks) >= 4:
            done.set()

    clock.subscribe(on_tick, drifts.append)
    clock.start()
    try:
        assert done.wait(2.0)
    finally:
        clock.stop()

    assert len(drifts) == 1
    assert drifts[0].gap_seconds == pytest.approx(10.0)
    # One tick per wake-up; the suspended 10 seconds are not replayed
    assert len(ticks) < 10


def test_listener_error_does_not_kill_ticker():
    clock = IntervalClock(interval=0.01)
    calls = []
    done = threading.Event()

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        done.set()

    clock.subscribe(flaky)
    clock.start()
    try:
        assert done.wait(2.0)
    finally:
        clock.stop()
