"""Normalized provider outcomes.

Both the webhook payload and the status-poll response are translated into one
of these variants before they reach the reconciler.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class StillRunning:
    """Provider is still generating."""


@dataclass(frozen=True)
class Succeeded:
    """Provider finished; result_url is the image to materialize."""

    result_url: str
    secondary_urls: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FailedTransient:
    """Provider-side failure that the provider itself may recover from."""

    reason: str


@dataclass(frozen=True)
class FailedTerminal:
    """Provider-side failure that will never produce an image."""

    reason: str


ProviderOutcome = StillRunning | Succeeded | FailedTransient | FailedTerminal
