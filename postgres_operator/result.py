"""
Scheduling outcome of a reconcile attempt

Stages report "no preference", "requeue after D" or "requeue immediately";
the strongest signal wins when they are merged.
"""

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class Result:
    """What the work queue should do with the request after this attempt"""
    requeue: bool = False
    requeue_after: float = 0.0

    @classmethod
    def immediately(cls) -> "Result":
        return cls(requeue=True)

    @classmethod
    def after(cls, seconds: float) -> "Result":
        return cls(requeue_after=float(seconds))

    @property
    def is_zero(self) -> bool:
        return not self.requeue and self.requeue_after <= 0

    def __str__(self) -> str:
        if self.requeue:
            return "requeue immediately"
        if self.requeue_after > 0:
            return f"requeue after {self.requeue_after:g}s"
        return "no requeue"


def merge(current: Result, following: Optional[Result]) -> Result:
    """
    Keep the stronger of two outcomes

    An immediate requeue dominates any delay; between two delays the shorter
    one wins; anything beats no preference.
    """
    if following is None:
        return current
    if current.requeue or following.requeue:
        return Result.immediately()
    if current.requeue_after <= 0:
        return following
    if following.requeue_after <= 0:
        return current
    return Result.after(min(current.requeue_after, following.requeue_after))


def aggregate(results: Iterable[Optional[Result]]) -> Result:
    """Fold any number of stage outcomes into one"""
    outcome = Result()
    for result in results:
        outcome = merge(outcome, result)
    return outcome
