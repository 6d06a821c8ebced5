"""
Timeout budgets propagated through nested tool calls.

A budget is a deadline allowance started on a monotonic clock. Nested
operations derive child budgets that are clamped by the parent's
remaining time, so a deep call chain can never outlive the top-level
caller's deadline.
"""

import time
from contextvars import ContextVar
from typing import Callable, Optional

Clock = Callable[[], float]


class Budget:
    """Deadline allowance for one request (or one nested operation)."""

    def __init__(self, total_seconds: float, *, clock: Clock = time.monotonic,
                 parent: Optional["Budget"] = None):
        if total_seconds < 0:
            raise ValueError("Budget total_seconds must not be negative")
        self.total_seconds = float(total_seconds)
        self.parent = parent
        self._clock = clock
        self.started_at = clock()

    @property
    def deadline(self) -> float:
        """Absolute deadline on the budget's clock."""
        return self.started_at + self.total_seconds

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        """Seconds left; never negative."""
        return max(0.0, self.total_seconds - self.elapsed())

    def is_expired(self) -> bool:
        return self.remaining() <= 0.0

    def for_operation(self, requested_seconds: Optional[float]) -> float:
        """Effective timeout for an operation: its request, clamped by what is left."""
        remaining = self.remaining()
        if requested_seconds is None:
            return remaining
        return min(float(requested_seconds), remaining)

    def child(self, requested_seconds: Optional[float] = None) -> "Budget":
        """Budget for a nested operation; never extends this one."""
        return Budget(self.for_operation(requested_seconds), clock=self._clock, parent=self)

    def snapshot(self) -> dict:
        return {
            "total_seconds": round(self.total_seconds, 3),
            "remaining_seconds": round(self.remaining(), 3),
        }

    def __repr__(self) -> str:
        return f"Budget(total={self.total_seconds:.3f}s, remaining={self.remaining():.3f}s)"


# Budget of the operation currently executing in this context. Nested tool
# calls made from inside a handler inherit it.
current_budget: ContextVar[Optional[Budget]] = ContextVar("current_budget", default=None)


def new_budget(total_seconds: float, clock: Clock = time.monotonic) -> Budget:
    return Budget(total_seconds, clock=clock)


def inherit_budget(requested_seconds: float, clock: Clock = time.monotonic) -> Budget:
    """Start a budget, clamped by the caller's budget when one is active."""
    parent = current_budget.get()
    if parent is not None:
        return parent.child(requested_seconds)
    return new_budget(requested_seconds, clock=clock)
