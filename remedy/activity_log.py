"""Append-only activity transcript and its teach-mode projection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterator

from .models import REVIEW_THRESHOLD, ActivityLogEntry, Resolution, StepStatus, Verdict

logger = logging.getLogger(__name__)

Listener = Callable[[ActivityLogEntry], None]


@dataclass(frozen=True)
class RenderedEntry:
    """One display row of the activity log."""

    entry: ActivityLogEntry
    confidence: int | None = None
    needs_review: bool = False
    low_confidence: bool = False
    can_correct: bool = False
    badge: str = ""  # "Reviewed" | "Corrected" | ""


class ActivityLog:
    """Ordered transcript of step lifecycle events.

    Entries are frozen dataclasses; the log only ever grows. Listeners are
    notified synchronously after each append, in append order.
    """

    def __init__(self, entries: list[ActivityLogEntry] | None = None):
        self._entries: list[ActivityLogEntry] = list(entries or [])
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ActivityLogEntry]:
        return iter(tuple(self._entries))

    @property
    def entries(self) -> tuple[ActivityLogEntry, ...]:
        return tuple(self._entries)

    def snapshot(self) -> tuple[ActivityLogEntry, ...]:
        return self.entries

    def next_index(self) -> int:
        return len(self._entries)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def append(self, entry: ActivityLogEntry) -> None:
        self._entries.append(entry)
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                # A broken reader must not stop the writer.
                logger.exception("Activity log listener failed for entry %s", entry.id)

    def render(
        self,
        resolution: Resolution | None = None,
        teach_mode: bool = False,
        threshold: int = REVIEW_THRESHOLD,
    ) -> list[RenderedEntry]:
        """Project entries for display. Never mutates the log or the steps."""
        steps = {s.id: s for s in resolution.steps} if resolution else {}
        rows: list[RenderedEntry] = []
        for entry in self._entries:
            step = steps.get(entry.step_id) if entry.step_id else None
            badge = ""
            if step is not None and step.feedback is not None:
                badge = "Reviewed" if step.feedback.verdict == Verdict.CORRECT else "Corrected"

            if not teach_mode or step is None:
                rows.append(RenderedEntry(entry=entry, badge=badge))
                continue

            low = step.confidence is not None and step.confidence < threshold
            rows.append(
                RenderedEntry(
                    entry=entry,
                    confidence=step.confidence,
                    needs_review=step.needs_review or low,
                    low_confidence=low,
                    can_correct=step.status == StepStatus.COMPLETED,
                    badge=badge,
                )
            )
        return rows
