"""Workflow executor: drives a resolution's steps one at a time."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import anyio

from .activity_log import ActivityLog
from .errors import (
    IssueFeedError,
    IssueNotFoundError,
    StepExecutionError,
    WorkflowAlreadyRunningError,
    WorkflowError,
)
from .models import (
    REVIEW_THRESHOLD,
    ActivityLogEntry,
    Issue,
    Resolution,
    ResolutionStatus,
    Step,
    StepStatus,
    StepType,
    now_iso,
)
from .scoring import ConfidenceScorer, OutcomeScorer

if TYPE_CHECKING:
    from .db import Database
    from .issues import IssueFeed
    from .notifier import Notifier
    from .providers import StepWorkProvider

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    """Runs one resolution's steps strictly in order.

    The executor is the only writer of non-terminal steps. A failed step
    halts the run (fail-fast); an abort request halts it between steps.
    """

    def __init__(
        self,
        provider: StepWorkProvider,
        issue_feed: IssueFeed,
        scorer: ConfidenceScorer | None = None,
        log: ActivityLog | None = None,
        db: Database | None = None,
        notifier: Notifier | None = None,
        inter_step_pause_ms: int = 0,
        step_timeout_sec: float | None = None,
        review_threshold: int = REVIEW_THRESHOLD,
    ):
        self.provider = provider
        self.issue_feed = issue_feed
        self.scorer = scorer or OutcomeScorer()
        self.log = log if log is not None else ActivityLog()
        self.db = db
        self.notifier = notifier
        self.inter_step_pause_ms = inter_step_pause_ms
        self.step_timeout_sec = step_timeout_sec
        self.review_threshold = review_threshold

        self.resolution: Resolution | None = None
        self.issue: Issue | None = None
        self._running = False
        self._abort_requested = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ---------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------

    async def start(self, resolution: Resolution, issue: Issue | None = None) -> Resolution:
        """Run the resolution to a terminal state and return it."""
        if self._running or resolution.status == ResolutionStatus.RUNNING:
            raise WorkflowAlreadyRunningError(
                f"Resolution {resolution.id} is already running"
            )
        if not resolution.steps:
            raise WorkflowError(f"Resolution {resolution.id} has no steps")
        if resolution.status != ResolutionStatus.PENDING or any(
            s.status != StepStatus.PENDING for s in resolution.steps
        ):
            raise WorkflowError(
                f"Resolution {resolution.id} has already been started"
            )

        # Claim the resolution before the first suspension point.
        self._running = True
        self._abort_requested = False
        resolution.status = ResolutionStatus.RUNNING
        self.resolution = resolution
        try:
            if issue is None:
                issue = await self._fetch_issue(resolution.issue_id)
            if issue is None:
                raise IssueNotFoundError(f"Issue '{resolution.issue_id}' not found")
            self.issue = issue

            logger.info(
                "Starting resolution %s for issue %s (%d steps)",
                resolution.id, issue.id, len(resolution.steps),
            )
            await self._persist_resolution()
            for s in resolution.steps:
                await self._persist_step(s)
            await self._emit(
                id="workflow-start",
                label="Agent started resolution workflow",
                status=StepStatus.STARTED,
                type=StepType.INFO,
                message=f"Beginning automated resolution for: {issue.title}",
            )

            last = len(resolution.steps) - 1
            for i in range(len(resolution.steps)):
                if self._abort_requested:
                    await self._cancel_workflow()
                    break
                if not await self.run_step(i):
                    break
                if i < last and self.inter_step_pause_ms:
                    await anyio.sleep(self.inter_step_pause_ms / 1000)
        except Exception:
            if resolution.status == ResolutionStatus.RUNNING:
                await self._release(resolution)
            raise
        finally:
            self._running = False
        return resolution

    async def run_step(self, i: int) -> bool:
        """Run step ``i`` (0-based). Returns True if it completed."""
        res = self._require_resolution()
        if not 0 <= i < len(res.steps):
            raise WorkflowError(f"Step index {i} out of range")
        step = res.steps[i]
        if step.status != StepStatus.PENDING:
            raise WorkflowError(f"Step {step.id} is {step.status.value}, not pending")
        if i > 0 and res.steps[i - 1].status != StepStatus.COMPLETED:
            raise WorkflowError(
                f"Step {step.id} cannot start before step {res.steps[i - 1].id} completes"
            )

        start = time.monotonic()
        step.status = StepStatus.STARTED
        step.type = StepType.INFO
        step.timestamp = now_iso()
        await self._persist_step(step)
        await self._emit(
            id=f"step-{i}-start",
            label=f"Starting: {step.label}",
            status=StepStatus.STARTED,
            type=StepType.INFO,
            message=f"Beginning execution of: {step.label}",
            step_id=step.id,
        )

        try:
            if self.step_timeout_sec:
                with anyio.fail_after(self.step_timeout_sec):
                    outcome = await self.provider.run(step, self.issue)
            else:
                outcome = await self.provider.run(step, self.issue)
        except TimeoutError:
            await self._fail_step(
                i, step, start, f"Step timed out after {self.step_timeout_sec}s"
            )
            return False
        except StepExecutionError as exc:
            await self._fail_step(i, step, start, str(exc))
            return False
        except Exception as exc:
            logger.exception("Step %s raised an unexpected error", step.id)
            await self._fail_step(i, step, start, f"{type(exc).__name__}: {exc}")
            return False

        step.duration_ms = int((time.monotonic() - start) * 1000)
        step.message = outcome.message
        step.output_text = outcome.output_text or outcome.message
        step.confidence = self.scorer.score(step, outcome)
        step.refresh_needs_review(self.review_threshold)
        step.status = StepStatus.COMPLETED
        step.type = StepType.SUCCESS
        step.timestamp = now_iso()
        await self._persist_step(step)
        await self._emit(
            id=f"step-{i}-complete",
            label=f"Completed: {step.label}",
            status=StepStatus.COMPLETED,
            type=StepType.SUCCESS,
            message=step.message,
            duration_ms=step.duration_ms,
            step_id=step.id,
        )
        logger.info(
            "Step %d/%d %s completed in %dms (confidence=%d%s)",
            step.index, len(res.steps), step.id, step.duration_ms, step.confidence,
            ", needs review" if step.needs_review else "",
        )

        if i == len(res.steps) - 1:
            await self.complete_workflow()
        return True

    async def complete_workflow(self) -> None:
        res = self._require_resolution()
        if res.status.is_terminal:
            raise WorkflowError(f"Resolution {res.id} is already {res.status.value}")
        res.status = ResolutionStatus.COMPLETED
        res.resolved_at = now_iso()
        await self._emit(
            id="workflow-complete",
            label="Resolution workflow completed successfully",
            status=StepStatus.COMPLETED,
            type=StepType.SUCCESS,
            message="All steps completed without errors. The insight has been resolved.",
        )
        await self._persist_resolution()
        logger.info(
            "Resolution %s completed: %d steps, %dms, %d need review",
            res.id, res.total_steps, res.total_duration_ms, res.count_needs_review,
        )
        feed_exc: Exception | None = None
        try:
            await self.issue_feed.mark_issue_resolved(res.issue_id, res.resolved_at)
        except Exception as exc:
            logger.error("Could not mark issue %s resolved: %s", res.issue_id, exc)
            feed_exc = exc
        await self._notify("resolution.completed", res)
        if feed_exc is not None:
            raise IssueFeedError(
                f"Resolution {res.id} completed but issue {res.issue_id} "
                f"was not marked resolved: {feed_exc}"
            ) from feed_exc

    def abort(self, resolution_id: str) -> bool:
        """Request a halt before the next step starts.

        The step in flight is never interrupted. Returns False when there is
        nothing running to abort.
        """
        res = self.resolution
        if res is None or res.id != resolution_id:
            raise WorkflowError(f"Resolution {resolution_id} is not owned by this executor")
        if not self._running or res.status.is_terminal:
            return False
        logger.info("Abort requested for resolution %s", resolution_id)
        self._abort_requested = True
        return True

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    async def _fetch_issue(self, issue_id: str) -> Issue | None:
        try:
            return await self.issue_feed.get_issue_by_id(issue_id)
        except Exception as exc:
            raise IssueFeedError(f"Could not load issue '{issue_id}': {exc}") from exc

    async def _release(self, res: Resolution) -> None:
        """Drop the RUNNING claim after an error outside step execution.

        Before any step has started the resolution goes back to PENDING so it
        can be started again; afterwards it is FAILED.
        """
        if all(s.status == StepStatus.PENDING for s in res.steps):
            res.status = ResolutionStatus.PENDING
            logger.warning("Resolution %s could not start; reset to pending", res.id)
            return
        res.status = ResolutionStatus.FAILED
        logger.error("Resolution %s aborted by an error outside step execution", res.id)
        for step in res.steps:
            if step.status == StepStatus.STARTED:
                step.status = StepStatus.FAILED
                step.type = StepType.ERROR
                step.message = "Interrupted by an error outside step execution"
                step.timestamp = now_iso()
        try:
            await self._persist_resolution()
            for step in res.steps:
                if step.status == StepStatus.FAILED:
                    await self._persist_step(step)
        except Exception:
            logger.exception("Could not persist failed state of resolution %s", res.id)

    def _require_resolution(self) -> Resolution:
        if self.resolution is None:
            raise WorkflowError("No resolution has been started")
        return self.resolution

    async def _fail_step(self, i: int, step: Step, start: float, reason: str) -> None:
        res = self._require_resolution()
        step.duration_ms = int((time.monotonic() - start) * 1000)
        step.status = StepStatus.FAILED
        step.type = StepType.ERROR
        step.message = reason
        step.timestamp = now_iso()
        res.status = ResolutionStatus.FAILED
        await self._persist_step(step)
        await self._emit(
            id=f"step-{i}-failed",
            label=f"Failed: {step.label}",
            status=StepStatus.FAILED,
            type=StepType.ERROR,
            message=reason,
            duration_ms=step.duration_ms,
            step_id=step.id,
        )
        await self._persist_resolution()
        logger.error("Step %s failed, halting resolution %s: %s", step.id, res.id, reason)
        await self._notify("resolution.failed", res)

    async def _cancel_workflow(self) -> None:
        res = self._require_resolution()
        res.status = ResolutionStatus.CANCELLED
        await self._emit(
            id="workflow-cancelled",
            label="Resolution workflow cancelled",
            status=StepStatus.FAILED,
            type=StepType.WARNING,
            message=f"Stopped after {res.completed_steps} of {res.total_steps} steps.",
        )
        await self._persist_resolution()
        logger.warning("Resolution %s cancelled", res.id)
        await self._notify("resolution.cancelled", res)

    async def _emit(
        self,
        id: str,
        label: str,
        status: StepStatus,
        type: StepType,
        message: str,
        duration_ms: int | None = None,
        step_id: str | None = None,
    ) -> ActivityLogEntry:
        res = self._require_resolution()
        entry = ActivityLogEntry(
            id=id,
            index=self.log.next_index(),
            label=label,
            status=status,
            type=type,
            message=message,
            timestamp=now_iso(),
            duration_ms=duration_ms,
            step_id=step_id,
        )
        self.log.append(entry)
        res.action_count += 1
        if self.db is not None:
            await self.db.append_log_entry(res.id, entry)
        return entry

    async def _persist_resolution(self) -> None:
        if self.db is not None:
            await self.db.upsert_resolution(self._require_resolution())

    async def _persist_step(self, step: Step) -> None:
        if self.db is not None:
            await self.db.upsert_step(self._require_resolution().id, step)

    async def _notify(self, event: str, res: Resolution) -> None:
        if self.notifier is not None:
            await self.notifier.notify(event, res)
