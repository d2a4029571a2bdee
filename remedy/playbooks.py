"""Static remediation playbooks, keyed by issue type."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from .models import DEFAULT_CONFIDENCE, Issue, Resolution, ResolutionMethod, Step


@dataclass(frozen=True)
class PlaybookStep:
    label: str
    result: str
    input_text: str = ""
    confidence: int = DEFAULT_CONFIDENCE


@dataclass(frozen=True)
class Playbook:
    name: str
    steps: tuple[PlaybookStep, ...] = field(default_factory=tuple)

    def default_confidences(self) -> list[int]:
        return [s.confidence for s in self.steps]


CREDENTIAL_ROTATION = Playbook(
    name="credential_rotation",
    steps=(
        PlaybookStep(
            label="Reviewing credential usage",
            result="Found 3 integrations using this credential. All are active and healthy.",
            input_text="Credential inventory and integration bindings for the expiring key.",
            confidence=95,
        ),
        PlaybookStep(
            label="Generating replacement credential",
            result="Generated new API key: sk_live_***abc123. Expires in 365 days.",
            input_text="Key policy: live scope, 365 day validity.",
            confidence=92,
        ),
        PlaybookStep(
            label="Updating affected integrations",
            result=(
                "Updated credentials in Orders API, Payments API, and Inventory API. "
                "All updates successful."
            ),
            input_text="Orders API, Payments API, Inventory API.",
            confidence=88,
        ),
        PlaybookStep(
            label="Verifying connection health",
            result="All 3 integrations verified. Health checks passed. Response times normal.",
            input_text="Health check endpoints for the updated integrations.",
            confidence=65,
        ),
        PlaybookStep(
            label="Preparing revocation of old credential",
            result=(
                "Old credential marked for revocation. Will be deactivated in 5 minutes "
                "after verification period."
            ),
            input_text="Previous credential id and verification window.",
            confidence=90,
        ),
    ),
)

GENERIC_REMEDIATION = Playbook(
    name="generic_remediation",
    steps=(
        PlaybookStep(
            label="Analyzing affected entities",
            result="Collected current state for all affected entities.",
            confidence=90,
        ),
        PlaybookStep(
            label="Applying remediation",
            result="Applied the recommended remediation.",
            confidence=80,
        ),
        PlaybookStep(
            label="Verifying outcome",
            result="Post-remediation checks passed.",
            confidence=85,
        ),
    ),
)

PLAYBOOKS: dict[str, Playbook] = {
    "credential_expiration": CREDENTIAL_ROTATION,
}


def playbook_for(issue: Issue) -> Playbook:
    return PLAYBOOKS.get(issue.type, GENERIC_REMEDIATION)


def build_resolution(
    issue: Issue,
    playbook: Playbook | None = None,
    resolution_id: str | None = None,
) -> Resolution:
    """Create a pending Resolution whose steps follow the playbook order."""
    playbook = playbook or playbook_for(issue)
    res_id = resolution_id or f"res-{issue.id}-{uuid.uuid4().hex[:8]}"
    steps = [
        Step(
            id=f"step-{i}",
            index=i,
            label=ps.label,
            input_text=ps.input_text,
        )
        for i, ps in enumerate(playbook.steps, 1)
    ]
    return Resolution(
        id=res_id,
        issue_id=issue.id,
        title=issue.title,
        description=issue.description,
        method=ResolutionMethod.AGENT,
        steps=steps,
    )
