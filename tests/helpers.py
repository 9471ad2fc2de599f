"""Helpers shared by slotrunner tests: throwaway git repos and issue records."""

import subprocess
from pathlib import Path

from slotrunner.github import Issue


def _git(args: list[str], cwd: Path, check: bool = True) -> subprocess.CompletedProcess:
    """Run a bare git command (no abstraction layer)."""
    return subprocess.run(
        ["git"] + args,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
    )


def _init_git_repo_basic(path: Path) -> None:
    """Initialise a minimal git repo on branch main without a remote."""
    path.mkdir(parents=True, exist_ok=True)
    _git(["init"], cwd=path)
    _git(["symbolic-ref", "HEAD", "refs/heads/main"], cwd=path)
    _git(["config", "user.email", "test@example.com"], cwd=path)
    _git(["config", "user.name", "Test"], cwd=path)
    _git(["config", "commit.gpgsign", "false"], cwd=path)
    (path / "README.md").write_text("init\n")
    _git(["add", "."], cwd=path)
    _git(["commit", "-m", "init"], cwd=path)


def _commit_file(repo: Path, name: str, content: str, message: str = "") -> None:
    (repo / name).parent.mkdir(parents=True, exist_ok=True)
    (repo / name).write_text(content)
    _git(["add", name], cwd=repo)
    _git(["commit", "-m", message or f"update {name}"], cwd=repo)


def make_issue(number: int, title: str = "", body: str = "", labels=None, assignees=None) -> Issue:
    return Issue(
        number=number,
        title=title or f"Issue {number}",
        body=body,
        labels=list(labels or []),
        state="OPEN",
        assignees=list(assignees or []),
        url=f"https://github.com/acme/widgets/issues/{number}",
    )
