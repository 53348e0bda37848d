from __future__ import annotations

from pathlib import Path

import pytest

from proposal_orchestrator import ErrorCategory, classify_error, get_version
from proposal_orchestrator.errors import ParseError, PersistenceError, UpstreamServiceError
from proposal_orchestrator.settings import RuntimeSettings


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings.checkpoint_backend == "sqlite"
    assert settings.max_regeneration_attempts == 3
    assert settings.pass_threshold == 70.0
    assert settings.auto_approve_score is None
    assert settings.human_review_enabled is True
    assert settings.use_llm is False


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROPOSAL_CHECKPOINT_BACKEND", " Memory ")
    monkeypatch.setenv("PROPOSAL_MAX_REGENERATIONS", "5")
    monkeypatch.setenv("PROPOSAL_PASS_THRESHOLD", "65")
    monkeypatch.setenv("PROPOSAL_AUTO_APPROVE_SCORE", "92.5")
    monkeypatch.setenv("PROPOSAL_HUMAN_REVIEW", "off")
    monkeypatch.setenv("PROPOSAL_SESSION_TIMEOUT_SECONDS", "900")

    settings = RuntimeSettings.from_env()

    assert settings.checkpoint_backend == "memory"
    assert settings.max_regeneration_attempts == 5
    assert settings.pass_threshold == 65.0
    assert settings.auto_approve_score == 92.5
    assert settings.human_review_enabled is False
    assert settings.session_timeout_seconds == 900


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PROPOSAL_CHECKPOINT_BACKEND", "postgres"),
        ("PROPOSAL_CHECKPOINT_BACKEND", "file"),
        ("PROPOSAL_CHECKPOINT_DB", "  "),
        ("PROPOSAL_MAX_REGENERATIONS", "abc"),
        ("PROPOSAL_MAX_REGENERATIONS", "0"),
        ("PROPOSAL_PASS_THRESHOLD", "140"),
        ("PROPOSAL_HUMAN_REVIEW", "maybe"),
        ("PROPOSAL_AUTO_APPROVE_SCORE", "50"),
        ("PROPOSAL_SESSION_MAX_LIFETIME_SECONDS", "60"),
        ("PROPOSAL_MODEL", "  "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_relative_paths_resolve_against_repo_root(tmp_path: Path) -> None:
    settings = RuntimeSettings(checkpoint_root="ckpt", checkpoint_db=str(tmp_path / "abs.sqlite"))
    assert settings.checkpoint_root_path(tmp_path) == tmp_path / "ckpt"
    assert settings.checkpoint_db_path(Path("/elsewhere")) == tmp_path / "abs.sqlite"
    assert settings.dependency_map_path(tmp_path) is None
    assert RuntimeSettings(dependency_map="deps.json").dependency_map_path(tmp_path) == tmp_path / "deps.json"


@pytest.mark.parametrize(
    ("error", "category"),
    [
        (ParseError("bad json"), ErrorCategory.INVALID_RESPONSE_FORMAT),
        (PersistenceError("disk full"), ErrorCategory.CHECKPOINT_ERROR),
        (TimeoutError(), ErrorCategory.LLM_UNAVAILABLE),
        (UpstreamServiceError("429 Too Many Requests"), ErrorCategory.RATE_LIMIT_EXCEEDED),
        (UpstreamServiceError("maximum context length is 8192 tokens"), ErrorCategory.CONTEXT_WINDOW_EXCEEDED),
        (UpstreamServiceError("upstream hiccup"), ErrorCategory.LLM_UNAVAILABLE),
        (RuntimeError("tool execution failed"), ErrorCategory.TOOL_EXECUTION_ERROR),
        (RuntimeError("something odd"), ErrorCategory.UNKNOWN),
    ],
)
def test_classify_error(error: Exception, category: ErrorCategory) -> None:
    assert classify_error(error) == category


def test_get_version_returns_string() -> None:
    assert isinstance(get_version(), str)
