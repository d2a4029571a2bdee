"""Tests for the sequential workflow executor."""

import asyncio

import anyio
import pytest
from remedy.activity_log import ActivityLog
from remedy.errors import (
    IssueFeedError,
    IssueNotFoundError,
    WorkflowAlreadyRunningError,
    WorkflowError,
)
from remedy.executor import WorkflowExecutor
from remedy.issues import MemoryIssueFeed
from remedy.models import (
    Resolution,
    ResolutionStatus,
    Step,
    StepOutcome,
    StepStatus,
    StepType,
)
from remedy.playbooks import CREDENTIAL_ROTATION, build_resolution
from remedy.providers import SimulatedWorkProvider
from remedy.scoring import TableScorer


class GatedProvider:
    """Holds step ``gate_at`` until the test releases it."""

    name = "gated"

    def __init__(self, gate_at=2):
        self.gate_at = gate_at
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, step, issue):
        if step.index == self.gate_at:
            self.entered.set()
            await self.release.wait()
        return StepOutcome(message=f"done {step.index}")


class SlowProvider:
    name = "slow"

    async def run(self, step, issue):
        await anyio.sleep(5)
        return StepOutcome(message="late")


class CrashingProvider:
    name = "crashing"

    async def run(self, step, issue):
        raise KeyError("missing binding")


def _five_step_resolution(issue):
    return build_resolution(issue, CREDENTIAL_ROTATION, resolution_id="res-1")


def _executor(provider, issue, **kwargs):
    kwargs.setdefault("scorer", TableScorer([95, 92, 88, 65, 90]))
    feed = MemoryIssueFeed([issue])
    return WorkflowExecutor(provider=provider, issue_feed=feed, **kwargs), feed


# --- Happy path ---

@pytest.mark.asyncio
async def test_credential_rotation_end_to_end(issue):
    provider = SimulatedWorkProvider(CREDENTIAL_ROTATION, delay_min_ms=0, delay_max_ms=0)
    executor, feed = _executor(provider, issue)
    res = _five_step_resolution(issue)

    await executor.start(res)

    assert res.status == ResolutionStatus.COMPLETED
    assert res.resolved_at
    assert [s.status for s in res.steps] == [StepStatus.COMPLETED] * 5
    assert [s.confidence for s in res.steps] == [95, 92, 88, 65, 90]
    assert res.count_needs_review == 1
    assert res.steps[3].needs_review is True
    assert res.steps[0].output_text.startswith("Found 3 integrations")

    # start + (start, complete) * 5 + complete
    log = executor.log
    assert len(log) == 12
    assert res.total_actions == 12
    assert log.entries[0].id == "workflow-start"
    assert log.entries[-1].id == "workflow-complete"
    assert log.entries[-1].type == StepType.SUCCESS

    resolved = await feed.get_issue_by_id(issue.id)
    assert resolved.status == "resolved"
    assert resolved.resolved_at == res.resolved_at
    assert not executor.is_running


@pytest.mark.asyncio
async def test_log_order_follows_steps(issue, scripted_provider):
    executor, _ = _executor(scripted_provider(), issue)
    res = _five_step_resolution(issue)
    await executor.start(res)

    ids = [e.id for e in executor.log]
    assert ids[1:3] == ["step-0-start", "step-0-complete"]
    assert ids[-3:-1] == ["step-4-start", "step-4-complete"]
    assert [e.index for e in executor.log] == list(range(12))


@pytest.mark.asyncio
async def test_provider_confidence_overrides_table(issue, scripted_provider):
    from remedy.scoring import OutcomeScorer
    provider = scripted_provider(confidences={1: 40})
    executor, _ = _executor(
        provider, issue, scorer=OutcomeScorer(TableScorer([95, 92, 88, 65, 90]))
    )
    res = _five_step_resolution(issue)
    await executor.start(res)
    assert res.steps[0].confidence == 40
    assert res.count_needs_review == 2


# --- Ordering ---

@pytest.mark.asyncio
async def test_next_step_waits_for_slow_step(issue):
    provider = GatedProvider(gate_at=2)
    executor, _ = _executor(provider, issue)
    res = _five_step_resolution(issue)

    task = asyncio.create_task(executor.start(res))
    await provider.entered.wait()

    assert res.steps[0].status == StepStatus.COMPLETED
    assert res.steps[1].status == StepStatus.STARTED
    assert all(s.status == StepStatus.PENDING for s in res.steps[2:])
    assert not any(e.step_id == "step-3" for e in executor.log)

    provider.release.set()
    await task
    assert res.status == ResolutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_earlier_entries_unchanged_by_later_appends(issue, scripted_provider):
    log = ActivityLog()
    snapshots = []
    log.subscribe(
        lambda e: snapshots.append(log.snapshot()) if e.id == "step-1-complete" else None
    )
    executor, _ = _executor(scripted_provider(), issue, log=log)
    await executor.start(_five_step_resolution(issue))

    snap = snapshots[0]
    assert len(log) > len(snap)
    assert log.snapshot()[: len(snap)] == snap


# --- Fail-fast ---

@pytest.mark.asyncio
async def test_failure_halts_workflow(issue, scripted_provider):
    provider = scripted_provider(fail_at=2)
    executor, feed = _executor(provider, issue)
    res = _five_step_resolution(issue)

    await executor.start(res)

    assert provider.calls == [1, 2]
    assert res.status == ResolutionStatus.FAILED
    assert res.steps[1].status == StepStatus.FAILED
    assert res.steps[1].type == StepType.ERROR
    assert "boom at step 2" in res.steps[1].message
    assert [s.status for s in res.steps[2:]] == [StepStatus.PENDING] * 3

    last = executor.log.entries[-1]
    assert last.id == "step-1-failed"
    assert last.status == StepStatus.FAILED
    assert {e.step_id for e in executor.log} == {None, "step-1", "step-2"}
    assert (await feed.get_issue_by_id(issue.id)).status == "active"


@pytest.mark.asyncio
async def test_unexpected_exception_fails_step(issue):
    executor, _ = _executor(CrashingProvider(), issue)
    res = _five_step_resolution(issue)
    await executor.start(res)
    assert res.status == ResolutionStatus.FAILED
    assert res.steps[0].status == StepStatus.FAILED
    assert "KeyError" in res.steps[0].message
    assert not executor.is_running


@pytest.mark.asyncio
async def test_step_timeout_fails_step(issue):
    executor, _ = _executor(SlowProvider(), issue, step_timeout_sec=0.05)
    res = _five_step_resolution(issue)
    await executor.start(res)
    assert res.status == ResolutionStatus.FAILED
    assert res.steps[0].status == StepStatus.FAILED
    assert "timed out" in res.steps[0].message


# --- Guards ---

@pytest.mark.asyncio
async def test_concurrent_start_rejected(issue):
    provider = GatedProvider(gate_at=1)
    executor, _ = _executor(provider, issue)
    res = _five_step_resolution(issue)

    task = asyncio.create_task(executor.start(res))
    await provider.entered.wait()

    with pytest.raises(WorkflowAlreadyRunningError):
        await executor.start(res)
    other, _ = _executor(GatedProvider(), issue)
    with pytest.raises(WorkflowAlreadyRunningError):
        await other.start(res)

    provider.release.set()
    await task
    # Exactly one start entry
    assert [e.id for e in executor.log].count("workflow-start") == 1


@pytest.mark.asyncio
async def test_restart_of_finished_resolution_rejected(issue, scripted_provider):
    executor, _ = _executor(scripted_provider(), issue)
    res = _five_step_resolution(issue)
    await executor.start(res)
    with pytest.raises(WorkflowError):
        await executor.start(res)


@pytest.mark.asyncio
async def test_empty_resolution_rejected(issue, scripted_provider):
    executor, _ = _executor(scripted_provider(), issue)
    with pytest.raises(WorkflowError):
        await executor.start(Resolution(id="r0", issue_id=issue.id, title="t"))


@pytest.mark.asyncio
async def test_unknown_issue_leaves_resolution_pending(scripted_provider):
    executor = WorkflowExecutor(scripted_provider(), MemoryIssueFeed([]))
    res = Resolution(id="r1", issue_id="ghost", title="t",
                     steps=[Step(id="step-1", index=1, label="x")])
    with pytest.raises(IssueNotFoundError):
        await executor.start(res)
    assert res.status == ResolutionStatus.PENDING
    assert len(executor.log) == 0
    assert not executor.is_running


@pytest.mark.asyncio
async def test_run_step_out_of_order_rejected(issue, scripted_provider):
    executor, _ = _executor(scripted_provider(fail_at=1), issue)
    res = _five_step_resolution(issue)
    await executor.start(res)
    with pytest.raises(WorkflowError):
        await executor.run_step(1)


# --- Abort ---

@pytest.mark.asyncio
async def test_abort_between_steps(issue):
    provider = GatedProvider(gate_at=2)
    executor, feed = _executor(provider, issue)
    res = _five_step_resolution(issue)

    task = asyncio.create_task(executor.start(res))
    await provider.entered.wait()
    assert executor.abort("res-1") is True

    provider.release.set()
    await task

    # Step in flight finishes; nothing after it starts
    assert res.steps[1].status == StepStatus.COMPLETED
    assert [s.status for s in res.steps[2:]] == [StepStatus.PENDING] * 3
    assert res.status == ResolutionStatus.CANCELLED
    last = executor.log.entries[-1]
    assert last.id == "workflow-cancelled"
    assert last.type == StepType.WARNING
    assert (await feed.get_issue_by_id(issue.id)).status == "active"


@pytest.mark.asyncio
async def test_abort_when_idle(issue, scripted_provider):
    executor, _ = _executor(scripted_provider(), issue)
    res = _five_step_resolution(issue)
    await executor.start(res)
    assert executor.abort("res-1") is False
    with pytest.raises(WorkflowError):
        executor.abort("someone-else")


# --- Persistence ---

@pytest.mark.asyncio
async def test_state_persisted_to_db(issue, scripted_provider, memory_db):
    executor, _ = _executor(scripted_provider(), issue, db=memory_db)
    res = _five_step_resolution(issue)
    await executor.start(res)

    got = await memory_db.get_resolution("res-1")
    assert got.status == ResolutionStatus.COMPLETED
    assert [s.confidence for s in got.steps] == [95, 92, 88, 65, 90]
    assert got.count_needs_review == 1
    assert got.action_count == 12
    entries = await memory_db.get_log_entries("res-1")
    assert [e.id for e in entries] == [e.id for e in executor.log]


# --- Errors outside step execution ---

class BrokenFeed(MemoryIssueFeed):
    """Issue feed whose lookups or updates raise."""

    def __init__(self, issues, fail_get=False, fail_mark=False):
        super().__init__(issues)
        self.fail_get = fail_get
        self.fail_mark = fail_mark

    async def get_issue_by_id(self, issue_id):
        if self.fail_get:
            raise RuntimeError("feed offline")
        return await super().get_issue_by_id(issue_id)

    async def mark_issue_resolved(self, issue_id, resolved_at):
        if self.fail_mark:
            raise RuntimeError("feed offline")
        return await super().mark_issue_resolved(issue_id, resolved_at)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def notify(self, event, resolution, step=None):
        self.events.append(event)


class FailingStepDb:
    """Database stand-in whose step write fails once step ``fail_index`` completes."""

    def __init__(self, fail_index):
        self.fail_index = fail_index
        self.resolution_statuses = []

    async def upsert_resolution(self, res):
        self.resolution_statuses.append(res.status)

    async def upsert_step(self, resolution_id, step):
        if step.index == self.fail_index and step.status == StepStatus.COMPLETED:
            raise RuntimeError("disk full")

    async def append_log_entry(self, resolution_id, entry):
        pass


@pytest.mark.asyncio
async def test_feed_error_before_first_step_resets_to_pending(issue, scripted_provider):
    executor = WorkflowExecutor(scripted_provider(), BrokenFeed([issue], fail_get=True))
    res = _five_step_resolution(issue)

    with pytest.raises(IssueFeedError):
        await executor.start(res)
    assert res.status == ResolutionStatus.PENDING
    assert not executor.is_running

    # A later run, on any executor, can still pick it up
    retry, _ = _executor(scripted_provider(), issue)
    await retry.start(res, issue)
    assert res.status == ResolutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_error_mid_run_marks_resolution_failed(issue, scripted_provider):
    db = FailingStepDb(fail_index=2)
    executor, _ = _executor(scripted_provider(), issue, db=db)
    res = _five_step_resolution(issue)

    with pytest.raises(RuntimeError, match="disk full"):
        await executor.start(res)

    assert res.status == ResolutionStatus.FAILED
    assert db.resolution_statuses[-1] == ResolutionStatus.FAILED
    assert not any(s.status == StepStatus.STARTED for s in res.steps)
    assert not executor.is_running
    with pytest.raises(WorkflowError):
        await executor.start(res)


@pytest.mark.asyncio
async def test_mark_resolved_failure_still_notifies(issue, scripted_provider):
    notifier = RecordingNotifier()
    executor = WorkflowExecutor(
        scripted_provider(), BrokenFeed([issue], fail_mark=True), notifier=notifier
    )
    res = _five_step_resolution(issue)

    with pytest.raises(IssueFeedError):
        await executor.start(res)

    assert res.status == ResolutionStatus.COMPLETED
    assert notifier.events == ["resolution.completed"]
    assert executor.log.entries[-1].id == "workflow-complete"
