"""Tests for the EcoDefer CLI."""

from __future__ import annotations

from pathlib import Path

from click.testing import CliRunner, Result

from ecodefer.cli import main


def _invoke(tmp_path: Path, *args: str) -> Result:
    runner = CliRunner()
    return runner.invoke(main, ["--data-dir", str(tmp_path), *args])


def _task_id(result: Result) -> str:
    for line in result.output.splitlines():
        if line.startswith("Task ID:"):
            return line.split(":", 1)[1].strip()
    raise AssertionError(f"no task id in output:\n{result.output}")


def test_version() -> None:
    runner = CliRunner()
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_init(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "init")
    assert result.exit_code == 0
    assert "initialized" in result.output.lower()
    assert (tmp_path / "config.toml").exists()
    assert (tmp_path / "data" / "ecodefer.db").exists()


def test_init_keeps_existing_config(tmp_path: Path) -> None:
    (tmp_path / "config.toml").write_text("max_concurrency = 3\n")
    result = _invoke(tmp_path, "init")
    assert result.exit_code == 0
    assert (tmp_path / "config.toml").read_text() == "max_concurrency = 3\n"


def test_invalid_config(tmp_path: Path) -> None:
    (tmp_path / "config.toml").write_text("max_concurrency = 0\n")
    result = _invoke(tmp_path, "status")
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_status(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "status")
    assert result.exit_code == 0
    assert "Persistence failures: 0" in result.output


def test_history_empty(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "history")
    assert result.exit_code == 0
    assert "No tasks yet" in result.output


# --- Submission ---


def test_submit_denied(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "submit", "nope-task")
    assert result.exit_code == 0
    assert "DENIED" in result.output
    assert "whitelist" in result.output


def test_submit_whitelisted(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "submit", "database-cleanup", "--data-size-mb", "100")
    assert result.exit_code == 0
    assert "APPROVED" in result.output or "DEFERRED" in result.output
    assert "Estimated power: 55W" in result.output


def test_submit_bad_payload(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "submit", "database-cleanup", "--payload", "{not json")
    assert result.exit_code == 2


def test_submit_payload_must_be_object(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "submit", "database-cleanup", "--payload", "[1, 2]")
    assert result.exit_code == 1
    assert "Payload must be an object" in result.output


def test_submit_unknown_urgency(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "submit", "database-cleanup", "--urgency", "someday")
    assert result.exit_code == 2


def test_task_and_decisions(tmp_path: Path) -> None:
    task_id = _task_id(_invoke(tmp_path, "submit", "nope-task"))

    shown = _invoke(tmp_path, "task", task_id)
    assert shown.exit_code == 0
    assert "denied" in shown.output

    trail = _invoke(tmp_path, "decisions", task_id)
    assert trail.exit_code == 0
    assert "denied" in trail.output
    assert "Not whitelisted" in trail.output


def test_unknown_task(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "task", "missing")
    assert result.exit_code == 1
    assert "Task not found" in result.output


def test_feedback(tmp_path: Path) -> None:
    task_id = _task_id(_invoke(tmp_path, "submit", "nope-task"))

    result = _invoke(tmp_path, "feedback", task_id, "avoidable", "--note", "never needed")
    assert result.exit_code == 0
    assert "Feedback recorded" in result.output

    invalid = _invoke(tmp_path, "feedback", task_id, "pointless")
    assert invalid.exit_code == 2


def test_history_lists_submissions(tmp_path: Path) -> None:
    _invoke(tmp_path, "submit", "nope-task")
    result = _invoke(tmp_path, "history")
    assert result.exit_code == 0
    assert "nope-task" in result.output


# --- Whitelist ---


def test_whitelist_add_and_remove(tmp_path: Path) -> None:
    added = _invoke(tmp_path, "whitelist", "add", "custom-job")
    assert added.exit_code == 0
    assert "custom-job" in _invoke(tmp_path, "whitelist", "list").output

    removed = _invoke(tmp_path, "whitelist", "remove", "custom-job")
    assert removed.exit_code == 0
    assert "custom-job" not in _invoke(tmp_path, "whitelist", "list").output


def test_whitelist_session_only(tmp_path: Path) -> None:
    _invoke(tmp_path, "whitelist", "add", "custom-job", "--session-only")
    assert "custom-job" not in _invoke(tmp_path, "whitelist", "list").output


# --- Scheduling and mesh ---


def test_tick(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "tick")
    assert result.exit_code == 0
    assert "dispatched:" in result.output


def test_peers_empty(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "peers", "--sweep")
    assert result.exit_code == 0
    assert "No peers announced" in result.output


def test_carbon(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "carbon")
    assert result.exit_code == 0
    assert "Tasks accounted: 0" in result.output
