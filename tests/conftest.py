"""Shared test fixtures for slotrunner tests."""

from pathlib import Path

import pytest

from helpers import _init_git_repo_basic
from slotrunner.config import EngineersConfig, ProjectConfig, RunnerConfig


@pytest.fixture(autouse=True)
def slotrunner_home(tmp_path, monkeypatch):
    """Point every runtime directory at the test's tmp dir."""
    home = tmp_path / "slotrunner-home"
    monkeypatch.setenv("SLOTRUNNER_HOME", str(home))
    monkeypatch.setenv("SLOTRUNNER_WORKTREES_DIR", str(tmp_path / "worktrees"))
    return home


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A throwaway repository with one commit on main."""
    repo = tmp_path / "repo"
    _init_git_repo_basic(repo)
    return repo


@pytest.fixture
def runner_config(git_repo) -> RunnerConfig:
    return RunnerConfig(
        project=ProjectConfig(repo="acme/widgets", path=git_repo, base_branch="main"),
        engineers=EngineersConfig(
            engine="claude",
            fallback_engines=[],
            max_parallel=2,
            max_retries=1,
            create_pr=False,
            rate_limit_retry_seconds=0,
        ),
    )
