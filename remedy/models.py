"""Core data models for remedy."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

REVIEW_THRESHOLD = 70
DEFAULT_CONFIDENCE = 85  # used when neither a scorer table nor feedback gives a value


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StepStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)


class StepType(str, Enum):
    """Display classification, independent of status."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ResolutionStatus.COMPLETED,
            ResolutionStatus.FAILED,
            ResolutionStatus.CANCELLED,
        )


class ResolutionMethod(str, Enum):
    AGENT = "agent"
    MANUAL = "manual"


class Verdict(str, Enum):
    CORRECT = "correct"
    PARTIAL = "partial"
    INCORRECT = "incorrect"


def derive_needs_review(
    confidence: int | None,
    feedback: Feedback | None = None,
    threshold: int = REVIEW_THRESHOLD,
) -> bool:
    """needs_review is true iff confidence is below threshold or a
    non-correct verdict has been recorded for the step."""
    if confidence is not None and confidence < threshold:
        return True
    return feedback is not None and feedback.verdict != Verdict.CORRECT


@dataclass
class Feedback:
    """A human correction of one step's record."""

    verdict: Verdict
    adjusted_confidence: int
    correction_note: str = ""
    updated_output: str | None = None
    updated_reasoning_hint: str | None = None
    submitted_at: str = ""

    def __post_init__(self) -> None:
        self.verdict = Verdict(self.verdict)
        if not 0 <= self.adjusted_confidence <= 100:
            raise ValueError(
                f"adjusted_confidence must be within 0-100, got {self.adjusted_confidence}"
            )
        if not self.submitted_at:
            self.submitted_at = now_iso()

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "adjusted_confidence": self.adjusted_confidence,
            "correction_note": self.correction_note,
            "updated_output": self.updated_output,
            "updated_reasoning_hint": self.updated_reasoning_hint,
            "submitted_at": self.submitted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Feedback:
        return cls(
            verdict=Verdict(data["verdict"]),
            adjusted_confidence=int(data["adjusted_confidence"]),
            correction_note=data.get("correction_note") or "",
            updated_output=data.get("updated_output"),
            updated_reasoning_hint=data.get("updated_reasoning_hint"),
            submitted_at=data.get("submitted_at") or "",
        )


@dataclass
class Step:
    """A single unit of work within a resolution."""

    id: str
    index: int
    label: str
    status: StepStatus = StepStatus.PENDING
    type: StepType = StepType.INFO
    message: str = ""
    timestamp: str = ""
    duration_ms: int | None = None
    input_text: str = ""
    output_text: str = ""
    confidence: int | None = None
    needs_review: bool = False
    feedback: Feedback | None = None

    def refresh_needs_review(self, threshold: int = REVIEW_THRESHOLD) -> bool:
        self.needs_review = derive_needs_review(self.confidence, self.feedback, threshold)
        return self.needs_review


@dataclass(frozen=True)
class ActivityLogEntry:
    """Append-only record of something the executor did."""

    id: str
    index: int
    label: str
    status: StepStatus
    type: StepType
    message: str
    timestamp: str
    duration_ms: int | None = None
    step_id: str | None = None


@dataclass
class Resolution:
    """One remediation attempt for one detected issue."""

    id: str
    issue_id: str
    title: str
    description: str = ""
    method: ResolutionMethod = ResolutionMethod.AGENT
    status: ResolutionStatus = ResolutionStatus.PENDING
    steps: list[Step] = field(default_factory=list)
    resolved_at: str = ""
    created_at: str = ""
    action_count: int = 0  # activity log entries recorded for this resolution

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def total_duration_ms(self) -> int:
        return sum(s.duration_ms or 0 for s in self.steps)

    @property
    def total_actions(self) -> int:
        return self.action_count

    @property
    def count_needs_review(self) -> int:
        return sum(1 for s in self.steps if s.needs_review)

    @property
    def completed_steps(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)

    def get_step(self, step_id: str) -> Step | None:
        return next((s for s in self.steps if s.id == step_id), None)


@dataclass
class Issue:
    """A detected problem (an "insight") awaiting resolution."""

    id: str
    type: str
    severity: str
    title: str
    description: str = ""
    detected_at: str = ""
    status: str = "active"  # "active" | "resolved"
    resolved_at: str = ""
    affected_entities: list[str] = field(default_factory=list)


@dataclass
class StepOutcome:
    """What a step work provider returns for a successful step."""

    message: str
    output_text: str = ""
    confidence: int | None = None
