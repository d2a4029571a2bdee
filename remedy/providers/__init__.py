"""Step work providers: the collaborators that actually perform each step."""

from __future__ import annotations

from typing import Protocol

from ..models import Issue, Step, StepOutcome
from .http import HttpWorkProvider
from .simulated import SimulatedWorkProvider


class StepWorkProvider(Protocol):
    """Performs one step's work.

    Returns a StepOutcome on success; raises StepExecutionError (or any
    exception) on failure.
    """

    name: str

    async def run(self, step: Step, issue: Issue) -> StepOutcome: ...


__all__ = ["HttpWorkProvider", "SimulatedWorkProvider", "StepWorkProvider"]
