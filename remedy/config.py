"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import REVIEW_THRESHOLD


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ExecutorConfig:
    provider: str = "simulated"  # "simulated" | "http"
    provider_url: str = ""
    step_delay_min_ms: int = 1000
    step_delay_max_ms: int = 2000
    inter_step_pause_ms: int = 300
    step_timeout_sec: float | None = None  # None → no timeout


@dataclass
class ReviewConfig:
    confidence_threshold: int = REVIEW_THRESHOLD
    default_confidences: list[int] = field(default_factory=list)  # [] → playbook defaults


@dataclass
class StoreConfig:
    backend: str = "sqlite"  # "sqlite" | "memory"
    path: str = ".remedy/state.db"
    max_retries: int = 3
    retry_backoff_sec: float = 0.5
    simulated_latency_ms: int = 0


@dataclass
class IssuesConfig:
    feed: str = "memory"  # "memory" | "http"
    base_url: str = ""


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: [
        "resolution.completed", "resolution.failed",
        "resolution.cancelled", "step.corrected",
    ])


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class Config:
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    issues: IssuesConfig = field(default_factory=IssuesConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api_token: str = ""
    project_root: str = ""

    def store_path(self) -> Path:
        path = Path(self.store.path)
        if self.store.backend == "memory" or self.store.path == ":memory:":
            return Path(":memory:")
        if path.is_absolute():
            return path
        return Path(self.project_root) / path


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    if "executor" in data and isinstance(data["executor"], dict):
        e = data["executor"]
        d = cfg.executor
        cfg.executor = ExecutorConfig(
            provider=e.get("provider", d.provider),
            provider_url=e.get("provider_url", d.provider_url),
            step_delay_min_ms=int(e.get("step_delay_min_ms", d.step_delay_min_ms)),
            step_delay_max_ms=int(e.get("step_delay_max_ms", d.step_delay_max_ms)),
            inter_step_pause_ms=int(e.get("inter_step_pause_ms", d.inter_step_pause_ms)),
            step_timeout_sec=e.get("step_timeout_sec", d.step_timeout_sec),
        )

    if "review" in data and isinstance(data["review"], dict):
        r = data["review"]
        cfg.review = ReviewConfig(
            confidence_threshold=int(
                r.get("confidence_threshold", cfg.review.confidence_threshold)
            ),
            default_confidences=[int(c) for c in r.get("default_confidences", [])],
        )

    if "store" in data and isinstance(data["store"], dict):
        s = data["store"]
        d = cfg.store
        cfg.store = StoreConfig(
            backend=s.get("backend", d.backend),
            path=s.get("path", d.path),
            max_retries=int(s.get("max_retries", d.max_retries)),
            retry_backoff_sec=float(s.get("retry_backoff_sec", d.retry_backoff_sec)),
            simulated_latency_ms=int(s.get("simulated_latency_ms", d.simulated_latency_ms)),
        )

    if "issues" in data and isinstance(data["issues"], dict):
        i = data["issues"]
        cfg.issues = IssuesConfig(
            feed=i.get("feed", cfg.issues.feed),
            base_url=i.get("base_url", cfg.issues.base_url),
        )

    if "notify" in data and isinstance(data["notify"], dict):
        n = data["notify"]
        cfg.notify = NotifyConfig(
            webhook_url=n.get("webhook_url", ""),
            events=n.get("events", cfg.notify.events),
        )

    if "logging" in data and isinstance(data["logging"], dict):
        lg = data["logging"]
        cfg.logging = LoggingConfig(level=str(lg.get("level", cfg.logging.level)).upper())

    if "api_token" in data:
        cfg.api_token = data["api_token"] or ""

    return cfg


def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    parsed = yaml.safe_load(path.read_text())
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise ValueError(
                f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}"
            )
        return {}
    return parsed


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (REMEDY_*)
      2. .remedy/local.config.yaml
      3. .remedy/config.yaml
    """
    project_root = Path(project_root)
    remedy_dir = project_root / ".remedy"

    base_data = _read_yaml(remedy_dir / "config.yaml", strict=True)
    local_data = _read_yaml(remedy_dir / "local.config.yaml", strict=False)

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    # Layer 3: env vars (highest priority)
    env_webhook = os.environ.get("REMEDY_WEBHOOK_URL")
    if env_webhook:
        cfg.notify.webhook_url = env_webhook

    env_feed = os.environ.get("REMEDY_ISSUE_FEED_URL")
    if env_feed:
        cfg.issues.feed = "http"
        cfg.issues.base_url = env_feed

    env_provider = os.environ.get("REMEDY_WORK_PROVIDER_URL")
    if env_provider:
        cfg.executor.provider = "http"
        cfg.executor.provider_url = env_provider

    env_token = os.environ.get("REMEDY_API_TOKEN")
    if env_token:
        cfg.api_token = env_token

    env_level = os.environ.get("REMEDY_LOG_LEVEL")
    if env_level:
        cfg.logging.level = env_level.upper()

    return cfg
