"""Confidence scoring strategies."""

from __future__ import annotations

from typing import Protocol, Sequence

from .models import DEFAULT_CONFIDENCE, Step, StepOutcome


class ConfidenceScorer(Protocol):
    def score(self, step: Step, outcome: StepOutcome) -> int: ...


def _clamp(value: int) -> int:
    return max(0, min(100, int(value)))


class TableScorer:
    """Fixed per-index defaults; step.index is 1-based."""

    def __init__(self, confidences: Sequence[int], default: int = DEFAULT_CONFIDENCE):
        self.confidences = list(confidences)
        self.default = default

    def score(self, step: Step, outcome: StepOutcome) -> int:
        pos = step.index - 1
        if 0 <= pos < len(self.confidences):
            return _clamp(self.confidences[pos])
        return _clamp(self.default)


class OutcomeScorer:
    """Trust the provider-reported confidence, falling back to another scorer."""

    def __init__(self, fallback: ConfidenceScorer | None = None):
        self.fallback = fallback or TableScorer([])

    def score(self, step: Step, outcome: StepOutcome) -> int:
        if outcome.confidence is not None:
            return _clamp(outcome.confidence)
        return self.fallback.score(step, outcome)
