"""Human review flow: open a step, edit a correction, merge it back."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import RemedyError, StepNotTerminalError, ValidationError
from .feedback import FeedbackStore
from .models import (
    DEFAULT_CONFIDENCE,
    REVIEW_THRESHOLD,
    Feedback,
    Resolution,
    Step,
    Verdict,
    derive_needs_review,
    now_iso,
)

if TYPE_CHECKING:
    from .notifier import Notifier

logger = logging.getLogger(__name__)


@dataclass
class CorrectionSession:
    """Edit buffer for one step. ``original_*`` fields are the snapshot
    taken at open time and are never edited."""

    resolution_id: str
    step_id: str
    original_output: str
    original_confidence: int | None
    corrected_output: str
    correction_note: str = ""
    verdict: Verdict = Verdict.CORRECT
    adjusted_confidence: int = DEFAULT_CONFIDENCE
    updated_reasoning_hint: str = ""

    @property
    def output_changed(self) -> bool:
        return self.corrected_output != self.original_output


class CorrectionController:
    """Mediates between a displayed step, the reviewer and the FeedbackStore.

    Only terminal steps can be corrected, so the executor and this
    controller never write the same step.
    """

    def __init__(
        self,
        store: FeedbackStore,
        notifier: Notifier | None = None,
        review_threshold: int = REVIEW_THRESHOLD,
    ):
        self.store = store
        self.notifier = notifier
        self.review_threshold = review_threshold
        self.session: CorrectionSession | None = None
        self._resolution: Resolution | None = None
        self._step: Step | None = None

    async def open(self, resolution: Resolution, step: Step) -> CorrectionSession:
        if not step.status.is_terminal:
            raise StepNotTerminalError(
                f"Step {step.id} is {step.status.value}; only finished steps can be corrected"
            )
        if resolution.get_step(step.id) is not step:
            raise RemedyError(f"Step {step.id} does not belong to resolution {resolution.id}")
        if self.session is not None:
            logger.debug("Discarding open correction for %s", self.session.step_id)

        existing = await self.store.get(resolution.id, step.id) or step.feedback
        original = step.output_text or step.message or ""

        if existing is not None:
            confidence = existing.adjusted_confidence
        elif step.confidence is not None:
            confidence = step.confidence
        else:
            confidence = DEFAULT_CONFIDENCE

        self.session = CorrectionSession(
            resolution_id=resolution.id,
            step_id=step.id,
            original_output=original,
            original_confidence=step.confidence,
            corrected_output=original,
            correction_note=existing.correction_note if existing else "",
            verdict=existing.verdict if existing else Verdict.CORRECT,
            adjusted_confidence=confidence,
            updated_reasoning_hint=(existing.updated_reasoning_hint or "") if existing else "",
        )
        self._resolution = resolution
        self._step = step
        return self.session

    def can_save(self) -> bool:
        s = self.session
        if s is None:
            return False
        return bool(s.correction_note.strip()) or s.output_changed

    async def save(self) -> Feedback:
        """Persist the correction, then merge it into the step.

        The step is only mutated after the store write succeeds; on
        FeedbackPersistenceError the session stays open so the reviewer
        can retry.
        """
        s = self.session
        if s is None or self._step is None or self._resolution is None:
            raise ValidationError("No correction is open")
        if not self.can_save():
            raise ValidationError("Add a correction note or change the output before saving")
        try:
            verdict = Verdict(s.verdict)
        except ValueError as exc:
            raise ValidationError(f"Unknown verdict: {s.verdict}") from exc
        if not 0 <= s.adjusted_confidence <= 100:
            raise ValidationError(
                f"Adjusted confidence must be within 0-100, got {s.adjusted_confidence}"
            )

        feedback = Feedback(
            verdict=verdict,
            adjusted_confidence=int(s.adjusted_confidence),
            correction_note=s.correction_note,
            updated_output=s.corrected_output if s.output_changed else None,
            updated_reasoning_hint=s.updated_reasoning_hint or None,
            submitted_at=now_iso(),
        )
        resolution, step = self._resolution, self._step

        await self.store.save(resolution.id, step.id, feedback)

        merge_feedback(step, feedback, self.review_threshold)
        logger.info(
            "Step %s of %s corrected: verdict=%s confidence=%d needs_review=%s",
            step.id, resolution.id, feedback.verdict.value,
            feedback.adjusted_confidence, step.needs_review,
        )
        self._close()
        if self.notifier is not None:
            await self.notifier.notify("step.corrected", resolution, step)
        return feedback

    def cancel(self) -> None:
        self._close()

    def _close(self) -> None:
        self.session = None
        self._resolution = None
        self._step = None


def merge_feedback(step: Step, feedback: Feedback, threshold: int = REVIEW_THRESHOLD) -> None:
    """Apply a stored correction to a step's displayed record."""
    step.feedback = feedback
    step.confidence = feedback.adjusted_confidence
    step.needs_review = derive_needs_review(feedback.adjusted_confidence, feedback, threshold)
    if feedback.updated_output is not None:
        step.output_text = feedback.updated_output
