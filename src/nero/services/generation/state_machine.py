"""Pure transition function for the generation task lifecycle.

    pending ──StillRunning──▶ processing
       │                          │
       ├──────Succeeded───────────┼──▶ completed   (effects: materialize, debit)
       └──FailedTransient/Terminal┴──▶ failed

Terminal states (completed, failed) absorb every outcome. decide() has no I/O:
the reconciler executes the returned effects.
"""

from dataclasses import dataclass
from enum import Enum

from nero.models.task import TaskStatus
from nero.services.generation.outcomes import (
    FailedTerminal,
    FailedTransient,
    ProviderOutcome,
    StillRunning,
    Succeeded,
)


class Effect(str, Enum):
    """Side effects the caller must run to complete a transition."""

    MATERIALIZE = "materialize"
    DEBIT = "debit"


@dataclass(frozen=True)
class Transition:
    """Result of applying an outcome to a task status.

    new_status is None when the outcome changes nothing.
    """

    new_status: TaskStatus | None
    effects: tuple[Effect, ...] = ()
    error_detail: str | None = None

    @property
    def is_noop(self) -> bool:
        return self.new_status is None


NOOP = Transition(new_status=None)


def decide(status: TaskStatus, outcome: ProviderOutcome, cost: int = 0) -> Transition:
    """Compute the transition for a task in `status` receiving `outcome`.

    Args:
        status: Current task status
        outcome: Normalized provider outcome
        cost: Stars to charge on success (0 = not cost-bearing)

    Returns:
        Transition describing the new status and the effects to execute
    """
    if status.is_terminal:
        return NOOP

    if isinstance(outcome, StillRunning):
        if status == TaskStatus.PENDING:
            return Transition(new_status=TaskStatus.PROCESSING)
        return NOOP

    if isinstance(outcome, Succeeded):
        effects = (Effect.MATERIALIZE, Effect.DEBIT) if cost > 0 else (Effect.MATERIALIZE,)
        return Transition(new_status=TaskStatus.COMPLETED, effects=effects)

    if isinstance(outcome, (FailedTransient, FailedTerminal)):
        return Transition(new_status=TaskStatus.FAILED, error_detail=outcome.reason)

    raise TypeError(f"Unknown provider outcome: {outcome!r}")
