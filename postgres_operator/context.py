"""
Per-attempt deadline and cancellation token

A Context travels through every call a reconcile attempt makes to the
Kubernetes API. Calls are bounded by the remaining time and the pipeline
stops between stages once the deadline passes or the operator shuts down.
"""

import threading
import time
from typing import Optional

from postgres_operator.errors import ReconcileCancelled


class Context:

    def __init__(self, timeout: Optional[float] = None,
                 cancelled: Optional[threading.Event] = None):
        self.deadline = time.monotonic() + timeout if timeout else None
        self.cancelled = cancelled or threading.Event()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded"""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def done(self) -> bool:
        if self.cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self):
        """Raise ReconcileCancelled when the attempt should stop"""
        if self.cancelled.is_set():
            raise ReconcileCancelled("reconcile cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise ReconcileCancelled("reconcile deadline exceeded")

    def cancel(self):
        self.cancelled.set()
