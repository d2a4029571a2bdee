"""Simulated step work: playbook result texts after a randomized delay."""

from __future__ import annotations

import random

import anyio

from ..models import Issue, Step, StepOutcome
from ..playbooks import GENERIC_REMEDIATION, Playbook

_FALLBACK_RESULT = "Step completed successfully"


class SimulatedWorkProvider:
    """Stands in for real remediation actions.

    Each step sleeps for a random duration in ``[delay_min_ms, delay_max_ms]``
    and returns the playbook's canned result for that position.
    """

    name = "simulated"

    def __init__(
        self,
        playbook: Playbook = GENERIC_REMEDIATION,
        delay_min_ms: int = 1000,
        delay_max_ms: int = 2000,
        rng: random.Random | None = None,
    ):
        if delay_max_ms < delay_min_ms:
            raise ValueError("delay_max_ms must be >= delay_min_ms")
        self.playbook = playbook
        self.delay_min_ms = delay_min_ms
        self.delay_max_ms = delay_max_ms
        self._rng = rng or random.Random()

    async def run(self, step: Step, issue: Issue) -> StepOutcome:
        delay_ms = self._rng.uniform(self.delay_min_ms, self.delay_max_ms)
        if delay_ms > 0:
            await anyio.sleep(delay_ms / 1000)

        pos = step.index - 1
        if 0 <= pos < len(self.playbook.steps):
            result = self.playbook.steps[pos].result
        else:
            result = _FALLBACK_RESULT
        # Confidence comes from the configured scorer, not from here.
        return StepOutcome(message=result, output_text=result)
