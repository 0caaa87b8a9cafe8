"""
Deadline: one time budget shared by every wait in a scenario.

Usage:
    from fargate_e2e.common.deadline import Deadline

    deadline = Deadline(300)
    while not deadline.expired:
        ...
        deadline.sleep(5)      # never sleeps past the budget

The clock and sleeper are injectable so tests can drive time without
real sleeping (see tests/conftest.py::FakeClock).
"""
import time
from typing import Callable, Optional


class Deadline:
    """Wall-clock budget with cooperative cancellation."""

    def __init__(
        self,
        seconds: Optional[float],
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], None] = time.sleep,
        _expires_at: Optional[float] = None,
    ):
        self._clock = clock
        self._sleeper = sleeper
        self._started_at = clock()
        if _expires_at is not None:
            self._expires_at = _expires_at
        elif seconds is None:
            self._expires_at = None
        else:
            self._expires_at = self._started_at + max(0.0, float(seconds))
        self._cancelled = False

    @classmethod
    def unbounded(cls, clock: Callable[[], float] = time.monotonic,
                  sleeper: Callable[[float], None] = time.sleep) -> "Deadline":
        return cls(None, clock=clock, sleeper=sleeper)

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started_at

    @property
    def remaining(self) -> float:
        if self._cancelled:
            return 0.0
        if self._expires_at is None:
            return float("inf")
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._cancelled or self.remaining <= 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel every wait bound to this deadline; they stop at their next check."""
        self._cancelled = True

    def sleep(self, seconds: float) -> float:
        """Sleep for ``seconds`` but never past the deadline. Returns the time slept."""
        duration = min(max(0.0, seconds), self.remaining)
        if duration > 0:
            self._sleeper(duration)
        return duration

    def child(self, seconds: Optional[float]) -> "Deadline":
        """A nested budget that can never outlive its parent."""
        now = self._clock()
        parent_expiry = now if self._cancelled else self._expires_at
        if seconds is None:
            expiry = parent_expiry
        else:
            own = now + max(0.0, float(seconds))
            expiry = own if parent_expiry is None else min(own, parent_expiry)
        return Deadline(None, clock=self._clock, sleeper=self._sleeper, _expires_at=expiry)

    def __repr__(self) -> str:
        if self._expires_at is None:
            return "Deadline(unbounded)"
        return f"Deadline(remaining={self.remaining:.1f}s, cancelled={self._cancelled})"
