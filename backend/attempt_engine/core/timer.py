"""
SectionTimer - one section's countdown.

Remaining time is duration minus used seconds, floor 0, and only shrinks.
`on_expired` fires exactly once, the first time remaining reaches 0 while
running. Untimed sections (no duration) count used time but never expire.
"""

from typing import Callable, Optional

from attempt_engine.errors import InvalidOperation


class SectionTimer:
    """Countdown for one section. Untimed sections count up and never expire."""

    def __init__(self, duration_seconds: Optional[int], already_used_seconds: int = 0,
                 on_expired: Callable[[], None] = None):
        if duration_seconds is not None and duration_seconds < 0:
            raise InvalidOperation("Section duration cannot be negative")
        self.duration_seconds = duration_seconds
        self.used_seconds = max(0, already_used_seconds)
        self.on_expired = on_expired
        self.running = False
        self.stopped = False
        self._expired_fired = False

    @property
    def is_timed(self) -> bool:
        return self.duration_seconds is not None

    def remaining_seconds(self) -> Optional[int]:
        if not self.is_timed:
            return None
        return max(0, self.duration_seconds - self.used_seconds)

    @property
    def is_exhausted(self) -> bool:
        return self.is_timed and self.remaining_seconds() == 0

    def start(self) -> None:
        if self.stopped:
            raise InvalidOperation("Section timer has been stopped")
        self.running = True
        # Resumed with no time left: expire immediately instead of granting time
        self._check_expired()

    def pause(self) -> None:
        self.running = False

    def resume(self) -> None:
        if not self.stopped:
            self.start()

    def toggle(self) -> bool:
        if self.running:
            self.pause()
        else:
            self.resume()
        return self.running

    def stop(self) -> None:
        """Permanent; a stopped timer ignores resume() and ticks."""
        self.running = False
        self.stopped = True

    def accepts_tick(self) -> bool:
        return self.running and not self.is_exhausted

    def tick(self) -> bool:
        """Consume one second. Returns False when the tick was not counted."""
        if not self.accepts_tick():
            return False
        self.used_seconds += 1
        self._check_expired()
        return True

    def resync(self, used_seconds: int) -> None:
        """Clamp to the authoritative used time; never gives time back."""
        self.used_seconds = max(self.used_seconds, used_seconds)
        if self.running:
            self._check_expired()

    def _check_expired(self) -> None:
        if self._expired_fired or not self.running or not self.is_exhausted:
            return
        self._expired_fired = True
        self.running = False
        if self.on_expired is not None:
            self.on_expired()
