"""Run configuration: defaults, optional config file, CLI overrides."""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import PreflightError

CONFIG_ENV_VAR = "RALPH_LOOP_CONFIG"
ENGINE_NAMES = ("claude", "opencode", "cursor", "codex")
DEFAULT_ENGINE = "claude"


@dataclass
class RunConfig:
    feature: str
    engine: str = DEFAULT_ENGINE
    plans_dir: Path = Path("plans")
    workdir: Path = field(default_factory=Path.cwd)
    engine_command: str | None = None
    skip_tests: bool = False
    skip_lint: bool = False
    dry_run: bool = False
    max_iterations: int = 0
    max_retries: int = 3
    retry_delay: float = 5.0
    iteration_pause_sec: float = 1.0
    attempt_timeout_sec: float | None = None
    branch_per_task: bool = False
    base_branch: str = ""
    create_pr: bool = False
    draft_pr: bool = False
    parallel: bool = False
    max_parallel: int = 3
    show_progress: bool = True
    verbose: bool = False

    @property
    def feature_dir(self) -> Path:
        return self.workdir / self.plans_dir / self.feature

    @property
    def breakdown_file(self) -> Path:
        return self.feature_dir / "breakdown.md"

    @property
    def progress_file(self) -> Path:
        return self.feature_dir / "progress.txt"

    @property
    def design_file(self) -> Path:
        return self.feature_dir / "design.md"

    def validate(self) -> None:
        if not self.feature.strip():
            raise PreflightError("Feature name required")
        if self.engine not in ENGINE_NAMES:
            raise PreflightError(f"Unknown engine: {self.engine} (expected one of {', '.join(ENGINE_NAMES)})")
        if self.max_iterations < 0:
            raise PreflightError("--max-iterations must be >= 0")
        if self.max_retries < 1:
            raise PreflightError("--max-retries must be >= 1")
        if self.retry_delay < 0:
            raise PreflightError("--retry-delay must be >= 0")
        if self.max_parallel < 1:
            raise PreflightError("--max-parallel must be >= 1")
        if self.attempt_timeout_sec is not None and self.attempt_timeout_sec <= 0:
            raise PreflightError("attempt_timeout_sec must be > 0 when set")

    def modes(self) -> list[str]:
        parts: list[str] = []
        if self.skip_tests:
            parts.append("no-tests")
        if self.skip_lint:
            parts.append("no-lint")
        if self.dry_run:
            parts.append("dry-run")
        if self.branch_per_task:
            parts.append("branch-per-task")
        if self.create_pr:
            parts.append("create-pr")
        if self.max_iterations > 0:
            parts.append(f"max:{self.max_iterations}")
        return parts


_PATH_FIELDS = {"plans_dir", "workdir"}
_INT_FIELDS = {"max_iterations", "max_retries", "max_parallel"}
_FLOAT_FIELDS = {"retry_delay", "iteration_pause_sec", "attempt_timeout_sec"}
_BOOL_FIELDS = {
    "skip_tests",
    "skip_lint",
    "dry_run",
    "branch_per_task",
    "create_pr",
    "draft_pr",
    "parallel",
    "show_progress",
    "verbose",
}


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if key in _PATH_FIELDS:
            return Path(str(value)).expanduser()
        if key in _INT_FIELDS:
            return int(value)
        if key in _FLOAT_FIELDS:
            return float(value)
    except (TypeError, ValueError) as err:
        raise PreflightError(f"Invalid value for {key}: {value!r}") from err
    if key in _BOOL_FIELDS:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    return str(value)


def _read_structured(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        try:
            import yaml  # type: ignore
        except Exception as err:  # noqa: BLE001
            raise PreflightError(f"invalid JSON and PyYAML unavailable for {path}") from err
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as err:
            raise PreflightError(f"invalid config file {path}: {err}") from err


def load_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML or JSON mapping whose keys mirror ``RunConfig`` fields."""
    if not path.exists() or not path.is_file():
        raise PreflightError(f"Config file not found: {path}")
    payload = _read_structured(path)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise PreflightError(f"Config file must contain a mapping: {path}")
    known = {f.name for f in dataclasses.fields(RunConfig)}
    normalized: dict[str, Any] = {}
    for raw_key, value in payload.items():
        key = str(raw_key).strip().replace("-", "_")
        if key not in known:
            raise PreflightError(f"Unknown config key '{raw_key}' in {path}")
        normalized[key] = _coerce(key, value)
    return normalized


def resolve_config_path(explicit: str | None) -> Path | None:
    raw = (explicit or os.environ.get(CONFIG_ENV_VAR, "")).strip()
    return Path(raw).expanduser() if raw else None


def build_config(feature: str, file_values: dict[str, Any], overrides: dict[str, Any]) -> RunConfig:
    """Merge config-file values with explicit CLI overrides (CLI wins)."""
    merged: dict[str, Any] = {**file_values}
    merged.update({k: v for k, v in overrides.items() if v is not None})
    merged["feature"] = feature
    config = RunConfig(**merged)
    config.validate()
    return config
