"""Feedback store: keyed storage of human corrections over a pluggable backend."""

from __future__ import annotations

import logging
from typing import Protocol

import anyio

from .db import Database
from .errors import FeedbackPersistenceError
from .models import Feedback

logger = logging.getLogger(__name__)

_DEFAULT_MAX_RETRIES = 3


class FeedbackBackend(Protocol):
    """Persistence backend consumed by FeedbackStore."""

    name: str

    async def save(self, resolution_id: str, step_id: str, feedback: Feedback) -> None: ...

    async def get(self, resolution_id: str, step_id: str) -> Feedback | None: ...

    async def list_by_resolution(self, resolution_id: str) -> dict[str, Feedback]: ...


class MemoryFeedbackBackend:
    """Process-lifetime map keyed by (resolution_id, step_id).

    ``latency_ms`` simulates the round trip of a remote service.
    """

    name = "memory"

    def __init__(self, latency_ms: int = 0):
        self.latency_ms = latency_ms
        self._data: dict[tuple[str, str], Feedback] = {}

    async def save(self, resolution_id: str, step_id: str, feedback: Feedback) -> None:
        self._data[(resolution_id, step_id)] = feedback
        if self.latency_ms:
            await anyio.sleep(self.latency_ms / 1000)

    async def get(self, resolution_id: str, step_id: str) -> Feedback | None:
        return self._data.get((resolution_id, step_id))

    async def list_by_resolution(self, resolution_id: str) -> dict[str, Feedback]:
        return {
            step_id: fb
            for (res_id, step_id), fb in self._data.items()
            if res_id == resolution_id
        }


class SqliteFeedbackBackend:
    """Durable backend on top of the shared Database."""

    name = "sqlite"

    def __init__(self, db: Database):
        self.db = db

    async def save(self, resolution_id: str, step_id: str, feedback: Feedback) -> None:
        await self.db.save_feedback(resolution_id, step_id, feedback)

    async def get(self, resolution_id: str, step_id: str) -> Feedback | None:
        return await self.db.get_feedback(resolution_id, step_id)

    async def list_by_resolution(self, resolution_id: str) -> dict[str, Feedback]:
        return await self.db.list_feedback(resolution_id)


class FeedbackStore:
    """Zero or one Feedback per (resolution_id, step_id); last write wins."""

    def __init__(
        self,
        backend: FeedbackBackend | None = None,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        retry_backoff_sec: float = 0.5,
    ):
        self.backend = backend if backend is not None else MemoryFeedbackBackend()
        self.max_retries = max_retries
        self.retry_backoff_sec = retry_backoff_sec

    async def save(self, resolution_id: str, step_id: str, feedback: Feedback) -> None:
        """Persist feedback, replacing any prior value for the key.

        Retries with exponential backoff; raises FeedbackPersistenceError
        once the retry budget is spent.
        """
        last_exc: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                await self.backend.save(resolution_id, step_id, feedback)
                logger.info(
                    "Saved feedback for %s:%s (verdict=%s, confidence=%d)",
                    resolution_id, step_id,
                    feedback.verdict.value, feedback.adjusted_confidence,
                )
                return
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Feedback write for %s:%s failed (attempt %d/%d): %s",
                    resolution_id, step_id, attempt + 1, self.max_retries + 1, exc,
                )
                if attempt < self.max_retries:
                    await anyio.sleep(self.retry_backoff_sec * 2 ** attempt)
        raise FeedbackPersistenceError(
            f"Could not save feedback for {resolution_id}:{step_id}: {last_exc}"
        ) from last_exc

    async def get(self, resolution_id: str, step_id: str) -> Feedback | None:
        return await self.backend.get(resolution_id, step_id)

    async def get_all_for_resolution(self, resolution_id: str) -> dict[str, Feedback]:
        return await self.backend.list_by_resolution(resolution_id)
