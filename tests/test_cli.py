from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("PROPOSAL_")}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))
    env["PROPOSAL_CHECKPOINT_BACKEND"] = "sqlite"
    env["PROPOSAL_CHECKPOINT_ROOT"] = str(tmp_path / "records")
    env["PROPOSAL_CHECKPOINT_DB"] = str(tmp_path / "checkpoints.sqlite")
    return env


def _run(env: dict[str, str], cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "proposal_orchestrator", "--repo-root", str(cwd), *args],
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


def _json(result: subprocess.CompletedProcess[str]) -> Any:  # noqa: ANN401
    assert result.returncode == 0, result.stderr
    return json.loads(result.stdout)


def test_cli_review_cycle_end_to_end(cli_env: dict[str, str], tmp_path: Path) -> None:
    source = tmp_path / "rfp.txt"
    source.write_text("Fund rural clinics.", encoding="utf-8")

    started = _json(
        _run(
            cli_env,
            tmp_path,
            "start",
            "--user-id",
            "alice",
            "--proposal-id",
            "grant-1",
            "--sections",
            "problem_statement,solution",
            "--source-file",
            str(source),
            "--open-session",
        )
    )
    thread_id = started["thread_id"]
    assert thread_id == "proposal:grant-1:user:alice"
    assert started["status"] == "awaiting_review"
    assert started["interrupt"]["interrupt_point"] == "evaluate:problem_statement"
    assert started["session"]["thread_id"] == thread_id

    resumed = _json(
        _run(
            cli_env,
            tmp_path,
            "feedback",
            "--thread-id",
            thread_id,
            "--type",
            "approve",
            "--unit",
            "problem_statement",
            "--resume",
        )
    )
    assert resumed == {"new_interrupt": True, "status": "awaiting_review", "success": True}

    status = _json(_run(cli_env, tmp_path, "status", "--thread-id", thread_id))
    assert status["units"] == {"problem_statement": "approved", "solution": "awaiting_review"}
    assert status["interrupt_details"]["node_id"] == "evaluate:solution"

    sessions = _json(_run(cli_env, tmp_path, "sessions", "--user-id", "alice"))
    assert [session["proposal_id"] for session in sessions] == ["grant-1"]


def test_cli_reports_errors_with_nonzero_exit(cli_env: dict[str, str], tmp_path: Path) -> None:
    result = _run(cli_env, tmp_path, "status", "--thread-id", "proposal:none:user:nobody")
    assert result.returncode == 1
    assert "no checkpoint" in result.stderr

    result = _run(cli_env, tmp_path, "resume", "--thread-id", "not-a-thread")
    assert result.returncode == 1
    assert "Malformed thread id" in result.stderr


def test_cli_rejects_invalid_configuration(cli_env: dict[str, str], tmp_path: Path) -> None:
    cli_env["PROPOSAL_CHECKPOINT_BACKEND"] = "postgres"
    result = _run(cli_env, tmp_path, "sweep")
    assert result.returncode == 1
    assert "PROPOSAL_CHECKPOINT_BACKEND" in result.stderr


def test_cli_sweep_with_no_sessions(cli_env: dict[str, str], tmp_path: Path) -> None:
    assert _json(_run(cli_env, tmp_path, "sweep")) == {"closed": [], "paused": []}
