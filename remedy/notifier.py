"""Webhook notifications."""

from __future__ import annotations

import logging

import httpx

from .models import Resolution, Step

logger = logging.getLogger(__name__)


class Notifier:
    """Send webhook notifications for resolution events."""

    def __init__(self, webhook_url: str = "", events: list[str] | None = None):
        self.webhook_url = webhook_url
        self.events = events or []
        self.client = httpx.AsyncClient()

    async def notify(self, event: str, resolution: Resolution, step: Step | None = None) -> None:
        if not self.webhook_url or event not in self.events:
            return

        payload = {
            "event": event,
            "resolution_id": resolution.id,
            "issue_id": resolution.issue_id,
            "title": resolution.title,
            "status": resolution.status.value,
            "total_steps": resolution.total_steps,
            "count_needs_review": resolution.count_needs_review,
        }
        if step is not None:
            payload["step"] = {
                "id": step.id,
                "index": step.index,
                "confidence": step.confidence,
                "needs_review": step.needs_review,
                "verdict": step.feedback.verdict.value if step.feedback else None,
            }

        try:
            await self.client.post(self.webhook_url, json=payload, timeout=10)
        except httpx.HTTPError as exc:
            # Notification failure should not affect the workflow
            logger.warning("Webhook %s for %s failed: %s", event, resolution.id, exc)

    async def close(self) -> None:
        await self.client.aclose()
