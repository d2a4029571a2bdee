"""Wiring: build collaborators from config and drive a resolution end to end."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .activity_log import ActivityLog
from .correction import CorrectionController
from .config import Config
from .db import Database
from .errors import IssueFeedError, IssueNotFoundError, RemedyError
from .executor import WorkflowExecutor
from .feedback import FeedbackStore, MemoryFeedbackBackend, SqliteFeedbackBackend
from .issues import HttpIssueFeed, IssueFeed, MemoryIssueFeed
from .models import ActivityLogEntry, Feedback, Resolution, Verdict
from .notifier import Notifier
from .playbooks import Playbook, build_resolution, playbook_for
from .providers import HttpWorkProvider, SimulatedWorkProvider
from .scoring import ConfidenceScorer, OutcomeScorer, TableScorer

logger = logging.getLogger(__name__)


def _create_issue_feed(config: Config) -> IssueFeed:
    if config.issues.feed == "http":
        if not config.issues.base_url:
            raise RemedyError("issues.base_url is required for the http issue feed")
        return HttpIssueFeed(config.issues.base_url, api_token=config.api_token)
    return MemoryIssueFeed()


def _create_provider(config: Config, playbook: Playbook):
    if config.executor.provider == "http":
        if not config.executor.provider_url:
            raise RemedyError("executor.provider_url is required for the http provider")
        return HttpWorkProvider(config.executor.provider_url, api_token=config.api_token)
    return SimulatedWorkProvider(
        playbook=playbook,
        delay_min_ms=config.executor.step_delay_min_ms,
        delay_max_ms=config.executor.step_delay_max_ms,
    )


def _create_scorer(config: Config, playbook: Playbook) -> ConfidenceScorer:
    table = TableScorer(config.review.default_confidences or playbook.default_confidences())
    if config.executor.provider == "http":
        return OutcomeScorer(fallback=table)
    return table


def _create_feedback_store(config: Config, db: Database | None) -> FeedbackStore:
    # Feedback must live next to the step rows it is merged into.
    if db is not None:
        backend = SqliteFeedbackBackend(db)
    else:
        backend = MemoryFeedbackBackend(latency_ms=config.store.simulated_latency_ms)
    return FeedbackStore(
        backend,
        max_retries=config.store.max_retries,
        retry_backoff_sec=config.store.retry_backoff_sec,
    )


def _create_notifier(config: Config) -> Notifier:
    return Notifier(webhook_url=config.notify.webhook_url, events=config.notify.events)


async def _close_quietly(obj) -> None:
    close = getattr(obj, "close", None)
    if close is not None:
        await close()


async def run_resolution(
    config: Config,
    db: Database | None,
    issue_id: str,
    on_entry: Callable[[ActivityLogEntry], None] | None = None,
    issue_feed: IssueFeed | None = None,
) -> tuple[Resolution, ActivityLog]:
    """Build a resolution for the issue's playbook and run it to a terminal state."""
    feed = issue_feed or _create_issue_feed(config)
    owns_feed = issue_feed is None
    notifier = _create_notifier(config)
    provider = None
    try:
        try:
            issue = await feed.get_issue_by_id(issue_id)
        except Exception as exc:
            raise IssueFeedError(f"Could not load issue '{issue_id}': {exc}") from exc
        if issue is None:
            raise IssueNotFoundError(f"Issue '{issue_id}' not found")

        playbook = playbook_for(issue)
        resolution = build_resolution(issue, playbook)
        provider = _create_provider(config, playbook)

        log = ActivityLog()
        if on_entry is not None:
            log.subscribe(on_entry)

        executor = WorkflowExecutor(
            provider=provider,
            issue_feed=feed,
            scorer=_create_scorer(config, playbook),
            log=log,
            db=db,
            notifier=notifier,
            inter_step_pause_ms=config.executor.inter_step_pause_ms,
            step_timeout_sec=config.executor.step_timeout_sec,
            review_threshold=config.review.confidence_threshold,
        )
        await executor.start(resolution, issue)
        return resolution, log
    finally:
        await notifier.close()
        if provider is not None:
            await _close_quietly(provider)
        if owns_feed:
            await _close_quietly(feed)


@dataclass
class CorrectionRequest:
    """Reviewer input for one step; None means "keep what the form shows"."""

    verdict: Verdict | None = None
    adjusted_confidence: int | None = None
    correction_note: str | None = None
    corrected_output: str | None = None
    updated_reasoning_hint: str | None = None


async def correct_step(
    config: Config,
    db: Database,
    resolution_id: str,
    step_id: str,
    request: CorrectionRequest,
) -> tuple[Resolution, Feedback]:
    """Open, edit and save one correction against a persisted resolution."""
    resolution = await db.get_resolution(
        resolution_id, review_threshold=config.review.confidence_threshold
    )
    if resolution is None:
        raise RemedyError(f"Resolution '{resolution_id}' not found")
    step = resolution.get_step(step_id)
    if step is None:
        raise RemedyError(f"Step '{step_id}' not found in {resolution_id}")

    notifier = _create_notifier(config)
    controller = CorrectionController(
        _create_feedback_store(config, db),
        notifier=notifier,
        review_threshold=config.review.confidence_threshold,
    )
    try:
        session = await controller.open(resolution, step)
        if request.verdict is not None:
            session.verdict = request.verdict
        if request.adjusted_confidence is not None:
            session.adjusted_confidence = request.adjusted_confidence
        if request.correction_note is not None:
            session.correction_note = request.correction_note
        if request.corrected_output is not None:
            session.corrected_output = request.corrected_output
        if request.updated_reasoning_hint is not None:
            session.updated_reasoning_hint = request.updated_reasoning_hint

        feedback = await controller.save()
        await db.upsert_step(resolution.id, step)
        return resolution, feedback
    finally:
        await notifier.close()
