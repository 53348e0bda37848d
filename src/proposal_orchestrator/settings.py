from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

CHECKPOINT_BACKENDS = frozenset({"memory", "sqlite"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    checkpoint_backend: str = "sqlite"
    checkpoint_root: str = "state_store/records"
    checkpoint_db: str = "state_store/checkpoints.sqlite"
    dependency_map: str = ""
    max_regeneration_attempts: int = 3
    pass_threshold: float = 70.0
    auto_approve_score: float | None = None
    human_review_enabled: bool = True
    session_timeout_seconds: int = 30 * 60
    session_check_interval_seconds: int = 60
    session_max_lifetime_seconds: int = 24 * 60 * 60
    request_timeout_seconds: int = 120
    model: str = "gpt-4o-mini"
    use_llm: bool = False
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            checkpoint_backend=os.getenv("PROPOSAL_CHECKPOINT_BACKEND", "sqlite"),
            checkpoint_root=os.getenv("PROPOSAL_CHECKPOINT_ROOT", "state_store/records"),
            checkpoint_db=os.getenv("PROPOSAL_CHECKPOINT_DB", "state_store/checkpoints.sqlite"),
            dependency_map=os.getenv("PROPOSAL_DEPENDENCY_MAP", ""),
            max_regeneration_attempts=_get_env_int("PROPOSAL_MAX_REGENERATIONS", default=3, minimum=1, maximum=20),
            pass_threshold=_get_env_float("PROPOSAL_PASS_THRESHOLD", default=70.0, minimum=0.0, maximum=100.0),
            auto_approve_score=_get_env_optional_float("PROPOSAL_AUTO_APPROVE_SCORE", minimum=0.0, maximum=100.0),
            human_review_enabled=_get_env_bool("PROPOSAL_HUMAN_REVIEW", default=True),
            session_timeout_seconds=_get_env_int("PROPOSAL_SESSION_TIMEOUT_SECONDS", default=30 * 60, minimum=1),
            session_check_interval_seconds=_get_env_int(
                "PROPOSAL_SESSION_CHECK_INTERVAL_SECONDS", default=60, minimum=1
            ),
            session_max_lifetime_seconds=_get_env_int(
                "PROPOSAL_SESSION_MAX_LIFETIME_SECONDS", default=24 * 60 * 60, minimum=1
            ),
            request_timeout_seconds=_get_env_int("PROPOSAL_REQUEST_TIMEOUT_SECONDS", default=120, minimum=1),
            model=os.getenv("PROPOSAL_MODEL", "gpt-4o-mini"),
            use_llm=_get_env_bool("PROPOSAL_USE_LLM", default=False),
            recursion_limit=_get_env_int("PROPOSAL_RECURSION_LIMIT", default=1_000, minimum=25),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        backend = self.checkpoint_backend.strip().lower()
        if backend not in CHECKPOINT_BACKENDS:
            raise ValueError(
                "PROPOSAL_CHECKPOINT_BACKEND must be one of: " + ", ".join(sorted(CHECKPOINT_BACKENDS))
            )
        model = self.model.strip()
        if not model:
            raise ValueError("PROPOSAL_MODEL must be non-empty")

        # -- Path validation --
        if backend == "sqlite" and not self.checkpoint_db.strip():
            raise ValueError("PROPOSAL_CHECKPOINT_DB must be non-empty for the sqlite backend")
        if backend == "sqlite" and not self.checkpoint_root.strip():
            raise ValueError("PROPOSAL_CHECKPOINT_ROOT must be non-empty for the sqlite backend")

        # -- Threshold and session window validation --
        if self.auto_approve_score is not None and self.auto_approve_score < self.pass_threshold:
            raise ValueError(
                "PROPOSAL_AUTO_APPROVE_SCORE must be >= PROPOSAL_PASS_THRESHOLD, "
                f"got: {self.auto_approve_score} < {self.pass_threshold}"
            )
        if self.session_max_lifetime_seconds < self.session_timeout_seconds:
            raise ValueError(
                "PROPOSAL_SESSION_MAX_LIFETIME_SECONDS must be >= PROPOSAL_SESSION_TIMEOUT_SECONDS"
            )
        if self.recursion_limit > 100_000:
            raise ValueError(f"PROPOSAL_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")
        return RuntimeSettings(
            checkpoint_backend=backend,
            checkpoint_root=self.checkpoint_root.strip(),
            checkpoint_db=self.checkpoint_db.strip(),
            dependency_map=self.dependency_map.strip(),
            max_regeneration_attempts=self.max_regeneration_attempts,
            pass_threshold=self.pass_threshold,
            auto_approve_score=self.auto_approve_score,
            human_review_enabled=self.human_review_enabled,
            session_timeout_seconds=self.session_timeout_seconds,
            session_check_interval_seconds=self.session_check_interval_seconds,
            session_max_lifetime_seconds=self.session_max_lifetime_seconds,
            request_timeout_seconds=self.request_timeout_seconds,
            model=model,
            use_llm=self.use_llm,
            recursion_limit=self.recursion_limit,
        )

    def checkpoint_root_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_root)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_db_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path

    def dependency_map_path(self, repo_root: Path) -> Path | None:
        if not self.dependency_map:
            return None
        path = Path(self.dependency_map)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return _parse_bounded_float(name, raw, minimum, maximum)


def _get_env_optional_float(name: str, minimum: float, maximum: float) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return _parse_bounded_float(name, raw, minimum, maximum)


def _parse_bounded_float(name: str, raw: str, minimum: float, maximum: float) -> float:
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
