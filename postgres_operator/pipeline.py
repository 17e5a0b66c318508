"""
Ordered stage runner

Stages run one after another and stop at the first failure. Work already
applied by earlier stages stays in place; every stage is idempotent, so the
next attempt simply starts over.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from postgres_operator.context import Context
from postgres_operator.errors import ReconcileCancelled, StageError
from postgres_operator.result import Result, merge

logger = logging.getLogger("postgres-operator.pipeline")


@dataclass(frozen=True)
class Stage:
    name: str
    func: Callable[[Context], Optional[Result]]


@dataclass
class PipelineOutcome:
    result: Result = field(default_factory=Result)
    error: Optional[BaseException] = None
    completed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


def run_pipeline(ctx: Context, key: str, stages: Sequence[Stage]) -> PipelineOutcome:
    """
    Run stages in order, folding their outcomes

    Args:
        ctx: Attempt context, checked before every stage
        key: namespace/name of the cluster, used in error context
        stages: Stages in execution order

    Returns:
        The merged Result when every stage succeeded; otherwise an empty
        Result and the first error, wrapped in StageError
    """
    outcome = PipelineOutcome()
    for stage in stages:
        try:
            ctx.check()
            result = stage.func(ctx)
        except ReconcileCancelled as e:
            logger.warning(f"Reconcile of {key} stopped before {stage.name}: {e}")
            return PipelineOutcome(error=StageError(stage.name, key, e), completed=outcome.completed)
        except Exception as e:
            logger.error(f"Stage {stage.name} failed for {key}: {e}")
            return PipelineOutcome(error=StageError(stage.name, key, e), completed=outcome.completed)

        outcome.result = merge(outcome.result, result)
        outcome.completed.append(stage.name)
        logger.debug(f"Stage {stage.name} done for {key} ({outcome.result})")
    return outcome
