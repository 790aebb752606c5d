"""Deadline based debouncing of change events into restart triggers."""

import logging
import time
from typing import Callable


logger = logging.getLogger(__name__)


class Debouncer:
    """
    Coalesces bursts of changes into a single restart trigger.

    Every change moves the deadline to ``change time + window``. ``poll`` fires
    once the deadline has passed. While a restart is in flight, further changes
    are folded into one pending restart that is armed by ``restart_finished``.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic) -> None:
        if window < 0:
            raise ValueError("Debounce window must be non-negative")

        self.window = window
        self.clock = clock

        self.deadline: float | None = None
        self.in_flight = False
        self._pending_since: float | None = None

    @property
    def pending(self) -> bool:
        """True when a change is waiting for the in-flight restart to finish."""
        return self._pending_since is not None

    def on_change(self, timestamp: float | None = None) -> None:
        """Record a change observed at ``timestamp``."""
        now = self.clock() if timestamp is None else timestamp

        if self.in_flight:
            self._pending_since = now
            logger.debug("Change during restart, queued one pending restart")
            return

        if self.deadline is not None:
            logger.debug("Change inside debounce window, extending deadline")
        self.deadline = now + self.window

    def poll(self, now: float | None = None) -> bool:
        """
        Check whether a restart is due.

        Returns:
            True exactly once per coalesced burst; the caller must then report
            completion through ``restart_finished``
        """
        if self.in_flight or self.deadline is None:
            return False

        now = self.clock() if now is None else now
        if now < self.deadline:
            return False

        self.deadline = None
        self.in_flight = True
        return True

    def restart_finished(self, now: float | None = None) -> None:
        """Mark the in-flight restart as done and arm a pending one if any."""
        self.in_flight = False
        if self._pending_since is None:
            return

        now = self.clock() if now is None else now
        self.deadline = max(now, self._pending_since + self.window)
        self._pending_since = None

    def time_until_due(self, now: float | None = None) -> float | None:
        """Seconds until the deadline, ``None`` when nothing is scheduled."""
        if self.in_flight or self.deadline is None:
            return None
        now = self.clock() if now is None else now
        return max(0.0, self.deadline - now)

    def cancel(self) -> None:
        """Drop any scheduled or pending restart."""
        self.deadline = None
        self._pending_since = None
