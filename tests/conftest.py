"""Shared fixtures for remedy tests."""

import pytest
import pytest_asyncio

from remedy.models import Issue, StepOutcome
from remedy.errors import StepExecutionError


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project with a fast .remedy/config.yaml."""
    remedy_dir = tmp_path / ".remedy"
    remedy_dir.mkdir()
    (remedy_dir / "config.yaml").write_text("""\
executor:
  provider: simulated
  step_delay_min_ms: 0
  step_delay_max_ms: 0
  inter_step_pause_ms: 0
review:
  confidence_threshold: 70
store:
  backend: sqlite
  path: .remedy/state.db
  max_retries: 1
  retry_backoff_sec: 0
issues:
  feed: memory
notify:
  webhook_url: ""
  events:
    - resolution.completed
    - step.corrected
""")
    return tmp_path


@pytest.fixture
def issue():
    return Issue(
        id="insight-001",
        type="credential_expiration",
        severity="critical",
        title="API credential expiring in 3 days",
        description="Production key used by three integrations expires soon.",
    )


class ScriptedProvider:
    """Step work provider returning canned results.

    ``fail_at`` is a 1-based step index that raises StepExecutionError.
    """

    name = "scripted"

    def __init__(self, fail_at=None, confidences=None):
        self.fail_at = fail_at
        self.confidences = confidences or {}
        self.calls = []

    async def run(self, step, issue):
        self.calls.append(step.index)
        if step.index == self.fail_at:
            raise StepExecutionError(f"boom at step {step.index}", step_id=step.id)
        return StepOutcome(
            message=f"result {step.index}",
            output_text=f"output {step.index}",
            confidence=self.confidences.get(step.index),
        )


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from remedy.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    from remedy.db import Database
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep REMEDY_* variables from the developer shell out of tests."""
    for name in (
        "REMEDY_WEBHOOK_URL",
        "REMEDY_ISSUE_FEED_URL",
        "REMEDY_WORK_PROVIDER_URL",
        "REMEDY_API_TOKEN",
        "REMEDY_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
