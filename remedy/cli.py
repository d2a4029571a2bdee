"""remedy CLI — typer-based command interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from .models import ActivityLogEntry, StepType

app = typer.Typer(
    name="remedy",
    help="remedy — automated issue resolution with human-in-the-loop correction",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .remedy/config.yaml — team-shared configuration
executor:
  provider: simulated        # simulated | http
  # provider_url: https://remediation.internal/api
  step_delay_min_ms: 1000
  step_delay_max_ms: 2000
  inter_step_pause_ms: 300
  # step_timeout_sec: 60

review:
  confidence_threshold: 70

store:
  backend: sqlite            # sqlite | memory (memory keeps nothing after exit)
  path: .remedy/state.db
  max_retries: 3
  retry_backoff_sec: 0.5

issues:
  feed: memory               # memory | http
  # base_url: https://insights.internal/api

notify:
  webhook_url: ""
  events:
    - resolution.completed
    - resolution.failed
    - resolution.cancelled
    - step.corrected

logging:
  level: WARNING
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .remedy/local.config.yaml — personal overrides (DO NOT commit)
# api_token: xxx
# logging:
#   level: DEBUG
"""

GITIGNORE_ENTRIES = [
    ".remedy/local.config.yaml",
    ".remedy/state.db",
    ".remedy/state.db-wal",
    ".remedy/state.db-shm",
]

_TYPE_ICONS = {
    StepType.INFO: "•",
    StepType.SUCCESS: "✅",
    StepType.WARNING: "⚠️",
    StepType.ERROR: "❌",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _load(root: Path, verbose: bool = False):
    from .config import load_config
    from .logging_config import setup_logging

    config = load_config(root)
    setup_logging("DEBUG" if verbose else config.logging.level)
    return config


async def _get_db(config):
    from .db import Database
    db_path = config.store_path()
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(str(db_path))
    await db.init()
    return db


def _format_duration(ms: int | None) -> str:
    if ms is None:
        return ""
    if ms < 1000:
        return f"{ms}ms"
    return f"{ms / 1000:.1f}s"


def _echo_entry(entry: ActivityLogEntry) -> None:
    icon = _TYPE_ICONS.get(entry.type, " ")
    duration = _format_duration(entry.duration_ms)
    suffix = f" ({duration})" if duration else ""
    typer.echo(f"  {icon} {entry.label}{suffix}")
    if entry.message:
        typer.echo(f"      {entry.message}")


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize remedy in the current project."""
    root = _get_project_root()

    remedy_dir = root / ".remedy"
    remedy_dir.mkdir(exist_ok=True)

    config_path = remedy_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = remedy_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# remedy\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  remedy initialized. Run `remedy issues` to see open issues.")


@app.command()
def issues(verbose: bool = typer.Option(False, "--verbose", "-v")):
    """List issues from the configured feed."""
    root = _get_project_root()
    config = _load(root, verbose)

    async def _issues():
        from .pipeline import _close_quietly, _create_issue_feed
        feed = _create_issue_feed(config)
        try:
            items = await feed.list_issues()
        finally:
            await _close_quietly(feed)
        if not items:
            typer.echo("  No issues found.")
            return
        typer.echo(f"\n  {'ID':<14} {'Severity':<10} {'Status':<10} {'Type':<25} Title")
        for i in items:
            typer.echo(f"  {i.id:<14} {i.severity:<10} {i.status:<10} {i.type:<25} {i.title}")
        typer.echo("")

    _run_async(_issues())


@app.command()
def run(
    issue_id: str = typer.Argument(..., help="Issue to resolve"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the automated resolution workflow for an issue."""
    root = _get_project_root()
    config = _load(root, verbose)

    async def _run():
        from .errors import RemedyError
        from .pipeline import run_resolution

        db = await _get_db(config)
        try:
            typer.echo(f"  remedy — resolving {issue_id}...")
            try:
                res, _ = await run_resolution(config, db, issue_id, on_entry=_echo_entry)
            except RemedyError as exc:
                typer.echo(f"  Error: {exc}", err=True)
                raise typer.Exit(1)
            typer.echo("")
            typer.echo(f"  Resolution: {res.id} [{res.status.value}]")
            typer.echo(
                f"  Steps: {res.completed_steps}/{res.total_steps} · "
                f"Duration: {_format_duration(res.total_duration_ms)} · "
                f"Actions: {res.total_actions} · Needs review: {res.count_needs_review}"
            )
            if res.status.value != "completed":
                raise typer.Exit(1)
        finally:
            await db.close()

    _run_async(_run())


@app.command()
def log(
    resolution_id: str = typer.Argument(..., help="Resolution ID"),
    teach: bool = typer.Option(False, "--teach", help="Show confidence and review flags"),
):
    """Show the activity log of a resolution."""
    root = _get_project_root()
    config = _load(root)

    async def _log():
        from .activity_log import ActivityLog

        db = await _get_db(config)
        try:
            res = await db.get_resolution(
                resolution_id, review_threshold=config.review.confidence_threshold
            )
            if res is None:
                typer.echo(f"  Resolution '{resolution_id}' not found.")
                raise typer.Exit(1)
            activity = ActivityLog(await db.get_log_entries(resolution_id))
            rows = activity.render(
                res, teach_mode=teach, threshold=config.review.confidence_threshold
            )
            typer.echo(f"\n  Activity Log — {res.id}")
            typer.echo("  " + "─" * 50)
            for row in rows:
                _echo_entry(row.entry)
                notes = []
                if row.confidence is not None:
                    notes.append(f"{row.confidence}%")
                if row.low_confidence:
                    notes.append("Low confidence")
                elif row.needs_review:
                    notes.append("Needs review")
                if row.badge:
                    notes.append(row.badge)
                if row.can_correct:
                    notes.append(f"correct: remedy correct {res.id} {row.entry.step_id}")
                if notes:
                    typer.echo(f"      [{' · '.join(notes)}]")
            typer.echo("")
        finally:
            await db.close()

    _run_async(_log())


@app.command()
def steps(resolution_id: str = typer.Argument(..., help="Resolution ID")):
    """Show step records and summary for a resolution."""
    root = _get_project_root()
    config = _load(root)

    async def _steps():
        db = await _get_db(config)
        try:
            res = await db.get_resolution(
                resolution_id, review_threshold=config.review.confidence_threshold
            )
            if res is None:
                typer.echo(f"  Resolution '{resolution_id}' not found.")
                raise typer.Exit(1)
            typer.echo(f"\n  {res.title}")
            typer.echo(f"  Status: {res.status.value} · Method: {res.method.value}")
            if res.resolved_at:
                typer.echo(f"  Resolved: {res.resolved_at}")
            typer.echo(
                f"  Steps: {res.total_steps} · Duration: {_format_duration(res.total_duration_ms)}"
                f" · Actions: {res.total_actions} · Needs review: {res.count_needs_review}"
            )
            typer.echo("")
            typer.echo(f"  {'#':<3} {'ID':<8} {'Status':<10} {'Conf.':<6} {'Review':<7} Label")
            for s in res.steps:
                conf = f"{s.confidence}%" if s.confidence is not None else "—"
                review = "yes" if s.needs_review else ""
                typer.echo(
                    f"  {s.index:<3} {s.id:<8} {s.status.value:<10} {conf:<6} {review:<7} {s.label}"
                )
            typer.echo("")
        finally:
            await db.close()

    _run_async(_steps())


@app.command()
def correct(
    resolution_id: str = typer.Argument(..., help="Resolution ID"),
    step_id: str = typer.Argument(..., help="Step ID, e.g. step-4"),
    verdict: str = typer.Option(None, "--verdict", help="correct | partial | incorrect"),
    confidence: int = typer.Option(None, "--confidence", min=0, max=100),
    note: str = typer.Option(None, "--note", help="Why was this incorrect or incomplete?"),
    output: str = typer.Option(None, "--output", help="Corrected output text"),
    hint: str = typer.Option(None, "--hint", help="Updated reasoning hint"),
):
    """Correct a finished step's verdict, confidence or output."""
    root = _get_project_root()
    config = _load(root)

    async def _correct():
        from .errors import RemedyError
        from .models import Verdict
        from .pipeline import CorrectionRequest, correct_step

        try:
            parsed_verdict = Verdict(verdict) if verdict else None
        except ValueError:
            typer.echo(f"  Unknown verdict '{verdict}'.", err=True)
            raise typer.Exit(2)

        db = await _get_db(config)
        try:
            request = CorrectionRequest(
                verdict=parsed_verdict,
                adjusted_confidence=confidence,
                correction_note=note,
                corrected_output=output,
                updated_reasoning_hint=hint,
            )
            try:
                res, fb = await correct_step(config, db, resolution_id, step_id, request)
            except RemedyError as exc:
                typer.echo(f"  Error: {exc}", err=True)
                raise typer.Exit(1)
            step = res.get_step(step_id)
            typer.echo(
                f"  Saved correction for {step_id}: {fb.verdict.value}, "
                f"confidence {fb.adjusted_confidence}%"
                f"{' (needs review)' if step.needs_review else ''}"
            )
            typer.echo(f"  Needs review in {res.id}: {res.count_needs_review}")
        finally:
            await db.close()

    _run_async(_correct())


@app.command()
def feedback(resolution_id: str = typer.Argument(..., help="Resolution ID")):
    """Show stored feedback for a resolution."""
    root = _get_project_root()
    config = _load(root)

    async def _feedback():
        db = await _get_db(config)
        try:
            entries = await db.list_feedback(resolution_id)
            if not entries:
                typer.echo(f"  No feedback for '{resolution_id}'.")
                return
            typer.echo(f"\n  Feedback — {resolution_id}")
            for step_id, fb in entries.items():
                typer.echo(
                    f"  {step_id:<8} {fb.verdict.value:<10} {fb.adjusted_confidence:>3}%  "
                    f"{fb.correction_note or '—'}"
                )
                if fb.updated_output is not None:
                    typer.echo(f"           output → {fb.updated_output}")
            typer.echo("")
        finally:
            await db.close()

    _run_async(_feedback())


@app.command("config")
def config_show():
    """Show merged configuration."""
    root = _get_project_root()

    from .config import load_config
    import yaml

    config = load_config(root)

    from dataclasses import asdict
    data = asdict(config)
    if data.get("api_token"):
        data["api_token"] = data["api_token"][:4] + "..."

    typer.echo("\n  remedy — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


if __name__ == "__main__":
    app()
