"""Configuration loading and runtime paths for slotrunner."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


# Engines the runner knows how to launch. Must match engines.specs.EngineName.
KNOWN_ENGINES = ("claude", "opencode", "codex", "cursor", "qwen")

CONFIG_RELATIVE_PATH = Path(".slotrunner") / "config.yaml"

DEFAULT_PROJECT_CONFIG = {
    "repo": "",
    "path": ".",
    "base_branch": "main",
}

DEFAULT_ENGINEERS_CONFIG = {
    "engine": "claude",
    "fallback_engines": [],
    "max_parallel": 3,
    "max_retries": 2,
    "create_pr": True,
    "pr_draft": True,
    "hard_timeout_seconds": 600,
    "stuck_warning_seconds": 120,
    "rate_limit_retry_seconds": 30,
    "backoff_base_seconds": 30,
    "backoff_max_seconds": 300,
}


# ---------------------------------------------------------------------------
# Runtime directories
# ---------------------------------------------------------------------------

def get_home_dir() -> Path:
    """Get the slotrunner runtime directory.

    Uses SLOTRUNNER_HOME when set (tests point it at a tmp dir),
    otherwise ~/.slotrunner.
    """
    env = os.environ.get("SLOTRUNNER_HOME")
    if env:
        return Path(env)
    return Path.home() / ".slotrunner"


def get_instances_dir() -> Path:
    return get_home_dir() / "instances"


def get_claims_dir() -> Path:
    return get_home_dir() / "claims"


def get_branches_dir() -> Path:
    return get_home_dir() / "branches"


def get_logs_dir() -> Path:
    return get_home_dir() / "logs"


def get_issue_logs_dir() -> Path:
    return get_logs_dir() / "issues"


def get_worktrees_dir() -> Path:
    """Directory that holds every slotrunner worktree.

    SLOTRUNNER_WORKTREES_DIR overrides the default of
    <tmpdir>/slotrunner-worktrees.
    """
    env = os.environ.get("SLOTRUNNER_WORKTREES_DIR")
    if env:
        return Path(env)
    return Path(tempfile.gettempdir()) / "slotrunner-worktrees"


# ---------------------------------------------------------------------------
# Config records
# ---------------------------------------------------------------------------

@dataclass
class ProjectConfig:
    repo: str = ""
    path: Path = field(default_factory=lambda: Path("."))
    base_branch: str = "main"

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "ProjectConfig":
        merged = {**DEFAULT_PROJECT_CONFIG, **(data or {})}
        path = Path(merged["path"]).expanduser()
        if not path.is_absolute() and base_dir is not None:
            path = (base_dir / path).resolve()
        return cls(
            repo=str(merged["repo"] or ""),
            path=path,
            base_branch=str(merged["base_branch"]),
        )


@dataclass
class EngineersConfig:
    """Engine selection and slot behaviour."""
    engine: str = "claude"
    fallback_engines: list[str] = field(default_factory=list)
    max_parallel: int = 3
    max_retries: int = 2
    create_pr: bool = True
    pr_draft: bool = True
    hard_timeout_seconds: float = 600
    stuck_warning_seconds: float = 120
    rate_limit_retry_seconds: float = 30
    backoff_base_seconds: float = 30
    backoff_max_seconds: float = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineersConfig":
        merged = {**DEFAULT_ENGINEERS_CONFIG, **(data or {})}
        unknown = set(merged) - set(DEFAULT_ENGINEERS_CONFIG)
        if unknown:
            raise ConfigError(f"Unknown engineers settings: {', '.join(sorted(unknown))}")
        fallbacks = merged["fallback_engines"] or []
        if isinstance(fallbacks, str):
            fallbacks = [fallbacks]
        config = cls(
            engine=str(merged["engine"]),
            fallback_engines=[str(e) for e in fallbacks],
            max_parallel=merged["max_parallel"],
            max_retries=merged["max_retries"],
            create_pr=bool(merged["create_pr"]),
            pr_draft=bool(merged["pr_draft"]),
            hard_timeout_seconds=merged["hard_timeout_seconds"],
            stuck_warning_seconds=merged["stuck_warning_seconds"],
            rate_limit_retry_seconds=merged["rate_limit_retry_seconds"],
            backoff_base_seconds=merged["backoff_base_seconds"],
            backoff_max_seconds=merged["backoff_max_seconds"],
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigError if any value is out of range."""
        for name in [self.engine, *self.fallback_engines]:
            if name not in KNOWN_ENGINES:
                raise ConfigError(
                    f"Unknown engine '{name}' (expected one of: {', '.join(KNOWN_ENGINES)})"
                )
        if not isinstance(self.max_parallel, int) or self.max_parallel < 1:
            raise ConfigError(f"max_parallel must be a positive integer, got {self.max_parallel!r}")
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries!r}")
        for name in (
            "hard_timeout_seconds",
            "stuck_warning_seconds",
            "backoff_base_seconds",
            "backoff_max_seconds",
        ):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}")
        if not isinstance(self.rate_limit_retry_seconds, (int, float)) or self.rate_limit_retry_seconds < 0:
            raise ConfigError(
                f"rate_limit_retry_seconds must be >= 0, got {self.rate_limit_retry_seconds!r}"
            )
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ConfigError("backoff_max_seconds must be >= backoff_base_seconds")


@dataclass
class RunnerConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    engineers: EngineersConfig = field(default_factory=EngineersConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, base_dir: Path | None = None) -> "RunnerConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping")
        return cls(
            project=ProjectConfig.from_dict(data.get("project") or {}, base_dir=base_dir),
            engineers=EngineersConfig.from_dict(data.get("engineers") or {}),
        )


def find_config_file(start: Path | None = None) -> Path | None:
    """Walk up from start looking for .slotrunner/config.yaml."""
    current = (start or Path.cwd()).resolve()
    for directory in [current, *current.parents]:
        candidate = directory / CONFIG_RELATIVE_PATH
        if candidate.exists():
            return candidate
    return None


def load_config(path: Path | str | None = None) -> RunnerConfig:
    """Load configuration from a YAML file.

    A missing file yields the defaults, with the project path set to the
    current directory. Relative project paths are resolved against the
    directory that holds the .slotrunner folder.

    Raises:
        ConfigError: if the YAML is malformed or holds invalid values
    """
    if path is None:
        path = find_config_file()
    if path is None or not Path(path).exists():
        return RunnerConfig.from_dict({}, base_dir=Path.cwd())

    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e

    base_dir = path.parent.parent if path.parent.name == ".slotrunner" else path.parent
    return RunnerConfig.from_dict(data, base_dir=base_dir)
