# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for CLI entry point."""
import json
import os

import pytest

from reviewfix.cli import main
from reviewfix.lockfile import create_lockfile, update_lockfile
from reviewfix.models import (
    AgentSettingsRecord,
    IterationEntry,
    IterationError,
    SessionEndEntry,
    SystemEntry,
    dump_log_entry,
)
from reviewfix.session_log import create_log_session


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A project directory as cwd plus a config pointing logs at tmp_path."""
    project = tmp_path / "proj"
    project.mkdir()
    logs = tmp_path / "logs"
    config = tmp_path / "config.yaml"
    config.write_text("logs_dir: {}\n".format(logs), encoding="utf-8")
    monkeypatch.chdir(project)
    return {"project": str(project), "logs": str(logs), "config": str(config)}


def _write_session(workspace, *entries):
    path = create_log_session(workspace["logs"], workspace["project"], "main")
    with open(path, "w", encoding="utf-8") as handle:
        for entry in entries:
            handle.write(dump_log_entry(entry) + "\n")
    return path


def _system(project):
    return SystemEntry(
        project_path=project,
        git_branch="main",
        reviewer=AgentSettingsRecord(agent="codex"),
        fixer=AgentSettingsRecord(agent="claude"),
        max_iterations=3,
    )


def test_version_output(capsys):
    main(["version"])
    out = capsys.readouterr().out
    assert "reviewfix v" in out
    assert "pydantic" in out


def test_help_no_crash(capsys):
    main([])
    out = capsys.readouterr().out
    assert "usage" in out.lower()


def test_status_json_empty(workspace, capsys):
    main(["--config", workspace["config"], "status", "--json"])
    data = json.loads(capsys.readouterr().out)
    assert data == {"active": [], "latest": None}


def test_status_shows_latest_and_active(workspace, capsys):
    _write_session(
        workspace,
        _system(workspace["project"]),
        SessionEndEntry(status="completed", reason="No issues found", iterations=1),
    )
    create_lockfile(workspace["logs"], "/other/project", "other-1", session_id="o1")
    update_lockfile(workspace["logs"], "/other/project", {"status": "running", "iteration": 2})

    main(["--config", workspace["config"], "status", "--json"])
    data = json.loads(capsys.readouterr().out)
    assert [s["session_id"] for s in data["active"]] == ["o1"]
    assert data["latest"]["status"] == "completed"
    assert data["latest"]["reason"] == "No issues found"


def test_logs_without_session(workspace):
    with pytest.raises(SystemExit) as exc_info:
        main(["--config", workspace["config"], "logs"])
    assert exc_info.value.code == 1


def test_logs_prints_entries(workspace, capsys):
    _write_session(
        workspace,
        _system(workspace["project"]),
        IterationEntry(iteration=1, error=IterationError(phase="fixer", message="Fixer failed", exit_code=1)),
        SessionEndEntry(status="failed", reason="Fixer failed", iterations=1),
    )
    main(["--config", workspace["config"], "logs"])
    out = capsys.readouterr().out
    assert "reviewer=codex" in out
    assert "Fixer failed" in out
    assert "iteration 1" in out


def test_logs_json(workspace, capsys):
    _write_session(workspace, _system(workspace["project"]))
    main(["--config", workspace["config"], "logs", "--json"])
    line = capsys.readouterr().out.strip()
    assert json.loads(line)["type"] == "system"


def test_stop_without_session(workspace, capsys):
    main(["--config", workspace["config"], "stop"])
    assert "No active session" in capsys.readouterr().out


def test_stop_removes_stale_lock(workspace, capsys):
    create_lockfile(workspace["logs"], workspace["project"], "old", pid=0)
    update_lockfile(workspace["logs"], workspace["project"], {"status": "running"})
    main(["--config", workspace["config"], "stop"])
    assert "Removed stale lock" in capsys.readouterr().out


def test_run_outside_git_repo(workspace, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--config", workspace["config"], "run"])
    assert exc_info.value.code == 2
    assert "Not a git repository" in capsys.readouterr().err


def test_invalid_config(tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text("retry: {base_delay_ms: 0}\n", encoding="utf-8")
    with pytest.raises(SystemExit) as exc_info:
        main(["--config", str(bad), "status"])
    assert exc_info.value.code == 2
    assert os.path.exists(str(bad))
