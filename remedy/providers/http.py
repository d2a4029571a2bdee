"""Step work delegated to a remote remediation service over HTTP."""

from __future__ import annotations

import logging

import httpx

from ..errors import StepExecutionError
from ..models import Issue, Step, StepOutcome

logger = logging.getLogger(__name__)


class HttpWorkProvider:
    """POSTs each step to ``{base_url}/steps/run``.

    Remediation actions are not idempotent, so a failed call is never
    retried here; it surfaces as StepExecutionError and fails the step.
    """

    name = "http"

    def __init__(self, base_url: str, api_token: str = "", timeout: float = 120):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def run(self, step: Step, issue: Issue) -> StepOutcome:
        payload = {
            "issue_id": issue.id,
            "issue_type": issue.type,
            "step_id": step.id,
            "index": step.index,
            "label": step.label,
            "input_text": step.input_text,
        }
        try:
            resp = await self.client.post(f"{self.base_url}/steps/run", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Remote step %s failed: %s", step.id, exc)
            raise StepExecutionError(f"Remote step failed: {exc}", step_id=step.id) from exc

        if data.get("error"):
            raise StepExecutionError(str(data["error"]), step_id=step.id)

        message = data.get("message") or ""
        confidence = data.get("confidence")
        return StepOutcome(
            message=message,
            output_text=data.get("output_text") or message,
            confidence=int(confidence) if confidence is not None else None,
        )

    async def close(self) -> None:
        await self.client.aclose()
