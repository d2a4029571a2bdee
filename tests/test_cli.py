"""Tests for CLI commands."""

import re

from typer.testing import CliRunner
from remedy.cli import app

runner = CliRunner()


def _run_issue(issue_id="insight-001"):
    result = runner.invoke(app, ["run", issue_id])
    match = re.search(r"Resolution: (\S+)", result.output)
    return result, match.group(1) if match else None


def test_init_creates_structure(tmp_path, monkeypatch):
    """remedy init creates .remedy/ + config.yaml + .gitignore."""
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert (tmp_path / ".remedy" / "config.yaml").exists()
    assert (tmp_path / ".remedy" / "local.config.yaml").exists()
    gitignore = (tmp_path / ".gitignore").read_text()
    assert ".remedy/local.config.yaml" in gitignore
    assert ".remedy/state.db" in gitignore


def test_init_idempotent(tmp_path, monkeypatch):
    """remedy init repeated does not overwrite existing config."""
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    (tmp_path / ".remedy" / "config.yaml").write_text("custom: true")
    runner.invoke(app, ["init"])
    assert "custom: true" in (tmp_path / ".remedy" / "config.yaml").read_text()
    assert (tmp_path / ".gitignore").read_text().count("# remedy") == 1


def test_issues_lists_samples(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["issues"])
    assert result.exit_code == 0
    assert "insight-001" in result.output
    assert "credential_expiration" in result.output


def test_run_streams_log_and_summary(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result, res_id = _run_issue()
    assert result.exit_code == 0, result.output
    assert "Agent started resolution workflow" in result.output
    assert "Completed: Verifying connection health" in result.output
    assert "Needs review: 1" in result.output
    assert res_id.startswith("res-insight-001-")
    assert (tmp_project / ".remedy" / "state.db").exists()


def test_run_unknown_issue_exits_nonzero(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["run", "insight-999"])
    assert result.exit_code == 1


def test_log_teach_mode_shows_review_flags(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    _, res_id = _run_issue()

    plain = runner.invoke(app, ["log", res_id])
    assert plain.exit_code == 0
    assert "Low confidence" not in plain.output

    teach = runner.invoke(app, ["log", res_id, "--teach"])
    assert teach.exit_code == 0
    assert "65%" in teach.output
    assert "Low confidence" in teach.output
    assert f"remedy correct {res_id} step-4" in teach.output


def test_log_unknown_resolution(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["log", "nope"])
    assert result.exit_code == 1


def test_correct_then_feedback(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    _, res_id = _run_issue()

    result = runner.invoke(app, [
        "correct", res_id, "step-4",
        "--verdict", "correct", "--confidence", "90",
        "--note", "Verified health checks by hand",
    ])
    assert result.exit_code == 0, result.output
    assert f"Needs review in {res_id}: 0" in result.output

    fb = runner.invoke(app, ["feedback", res_id])
    assert fb.exit_code == 0
    assert "step-4" in fb.output
    assert "Verified health checks by hand" in fb.output

    steps = runner.invoke(app, ["steps", res_id])
    assert steps.exit_code == 0
    assert "Needs review: 0" in steps.output


def test_correct_without_note_rejected(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    _, res_id = _run_issue()
    result = runner.invoke(app, ["correct", res_id, "step-1", "--verdict", "partial"])
    assert result.exit_code == 1


def test_correct_unknown_verdict(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    _, res_id = _run_issue()
    result = runner.invoke(app, ["correct", res_id, "step-1", "--verdict", "maybe",
                                 "--note", "x"])
    assert result.exit_code == 2


def test_config_show_masks_token(tmp_project, monkeypatch):
    """remedy config shows merged config."""
    monkeypatch.chdir(tmp_project)
    monkeypatch.setenv("REMEDY_API_TOKEN", "secret-token-value")
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "confidence_threshold" in result.output
    assert "secret-token-value" not in result.output
