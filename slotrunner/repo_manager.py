"""Merging slot branches into the shared checkout, and opening PRs.

The shared checkout is not safe for concurrent use, so every merge holds
both a process-local mutex and an flock on a file inside the repository's
git directory. Other slotrunner processes on the same repo queue behind it
for up to MERGE_LOCK_TIMEOUT_SECONDS.
"""

import logging
import re
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from . import branch_ledger
from .git_utils import BRANCH_PREFIX, get_current_branch
from .lock_utils import locked_with_timeout

logger = logging.getLogger(__name__)

MERGE_LOCK_NAME = "slotrunner-merge.lock"
MERGE_LOCK_TIMEOUT_SECONDS = 600.0


class MergeStatus(Enum):
    """Result of a merge attempt."""
    MERGED = "merged"
    NOOP = "noop"
    CONFLICT = "conflict"
    REBASE_CONFLICT = "rebase_conflict"
    ERROR = "error"


@dataclass
class RebaseResult:
    """Result of bringing a feature branch up to date with base."""
    ok: bool
    rebased: bool = False
    message: str = ""


@dataclass
class MergeResult:
    """Result of a merge operation."""
    status: MergeStatus
    message: str = ""
    conflict_files: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in (MergeStatus.MERGED, MergeStatus.NOOP)

    @property
    def is_conflict(self) -> bool:
        return self.status in (MergeStatus.CONFLICT, MergeStatus.REBASE_CONFLICT)


@dataclass
class PrInfo:
    """Information about a pull request."""
    url: str
    number: int | None = None
    created: bool = False  # True if newly created, False if already existed


_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


class RepoManager:
    """Git operations against the shared checkout.

    Args:
        repo_path: The checkout merges land in
        base_branch: Branch feature branches are cut from and merged into
    """

    _thread_lock = threading.Lock()

    def __init__(self, repo_path: Path | str, base_branch: str = "main"):
        self.repo_path = Path(repo_path)
        self.base_branch = base_branch

    def _run_git(
        self,
        args: list[str],
        check: bool = True,
        timeout: int = 120,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess:
        """Run a git command in the shared checkout (or cwd)."""
        cmd = ["git"] + args
        return subprocess.run(
            cmd,
            cwd=cwd or self.repo_path,
            capture_output=True,
            text=True,
            check=check,
            timeout=timeout,
        )

    def _run_gh(
        self, args: list[str], check: bool = True, timeout: int = 60
    ) -> subprocess.CompletedProcess:
        """Run a gh CLI command in the shared checkout."""
        cmd = ["gh"] + args
        return subprocess.run(
            cmd,
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            check=check,
            timeout=timeout,
        )

    def merge_lock_path(self) -> Path:
        result = self._run_git(["rev-parse", "--git-common-dir"], check=False)
        git_dir = Path(result.stdout.strip() or ".git")
        if not git_dir.is_absolute():
            git_dir = self.repo_path / git_dir
        return git_dir / MERGE_LOCK_NAME

    # --- Merge ---

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._run_git(["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        return result.returncode == 0

    def rebase_onto_base(self, feature_branch: str, worktree: Path | None = None) -> RebaseResult:
        """Rebase feature_branch onto base if base has moved ahead of it.

        The rebase runs in the feature's worktree when one is given, since
        git refuses to check out a branch that a worktree already holds.
        On conflict the rebase is aborted and the branch left untouched.
        """
        if self.is_ancestor(self.base_branch, feature_branch):
            return RebaseResult(ok=True, message="Already based on base branch")

        logger.info("%s diverged from %s, rebasing before merge", feature_branch, self.base_branch)
        if worktree is not None and Path(worktree).exists():
            cwd = Path(worktree)
            args = ["rebase", self.base_branch]
        else:
            cwd = self.repo_path
            args = ["rebase", self.base_branch, feature_branch]
        start_branch = get_current_branch(self.repo_path) if cwd == self.repo_path else None

        try:
            self._run_git(args, cwd=cwd)
            return RebaseResult(ok=True, rebased=True, message=f"Rebased onto {self.base_branch}")
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            self._run_git(["rebase", "--abort"], check=False, timeout=30, cwd=cwd)
            detail = (getattr(e, "stderr", None) or getattr(e, "stdout", None) or str(e)).strip()
            return RebaseResult(
                ok=False,
                message=f"Rebase conflict rebasing {feature_branch} onto {self.base_branch}: {detail}",
            )
        finally:
            if start_branch and start_branch != get_current_branch(self.repo_path):
                self._run_git(["checkout", start_branch], check=False)

    def merge_branch(
        self,
        feature_branch: str,
        issue_number: int,
        worktree: Path | None = None,
    ) -> MergeResult:
        """Merge a feature branch into base under the merge lock.

        Steps: rebase if base moved on, skip when there is nothing to
        merge, stash local edits, check out base, merge --no-ff, then
        restore the original branch and stash no matter what happened.

        Returns:
            MergeResult; conflicts leave the shared checkout as it was.
        """
        with self._thread_lock:
            with locked_with_timeout(self.merge_lock_path(), MERGE_LOCK_TIMEOUT_SECONDS) as acquired:
                if not acquired:
                    return MergeResult(
                        status=MergeStatus.ERROR,
                        message="Timed out waiting for the merge lock held by another process",
                    )
                return self._merge_locked(feature_branch, issue_number, worktree)

    def _merge_locked(
        self, feature_branch: str, issue_number: int, worktree: Path | None
    ) -> MergeResult:
        rebase = self.rebase_onto_base(feature_branch, worktree)
        if not rebase.ok:
            logger.warning(rebase.message)
            return MergeResult(status=MergeStatus.REBASE_CONFLICT, message=rebase.message)

        diff = self._run_git(["diff", "--stat", f"{self.base_branch}...{feature_branch}"], check=False)
        if diff.returncode != 0:
            return MergeResult(status=MergeStatus.ERROR, message=diff.stderr.strip())
        if not diff.stdout.strip():
            logger.warning("No changes in %s relative to %s", feature_branch, self.base_branch)
            return MergeResult(status=MergeStatus.NOOP, message="Nothing to merge")

        stashed = False
        status = self._run_git(["status", "--porcelain", "--untracked-files=no"], check=False)
        if status.stdout.strip():
            self._run_git(["stash", "push", "-m", f"{BRANCH_PREFIX}-pre-merge-{issue_number}"])
            stashed = True
            logger.debug("Stashed uncommitted changes before merge")

        start_branch = get_current_branch(self.repo_path)
        try:
            if start_branch != self.base_branch:
                self._run_git(["checkout", self.base_branch])

            merge = self._run_git(
                ["merge", "--no-ff", "-m", f"Merge {feature_branch} (issue #{issue_number})", feature_branch],
                check=False,
            )
            if merge.returncode == 0:
                branch_ledger.append_entry(
                    "merge", feature_branch, worktree or "", issue_number,
                    detail=f"merged into {self.base_branch}",
                )
                logger.info("Merged %s into %s", feature_branch, self.base_branch)
                return MergeResult(status=MergeStatus.MERGED, message=f"Merged into {self.base_branch}")

            unmerged = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
            conflict_files = [f for f in unmerged.stdout.splitlines() if f.strip()]
            self._run_git(["merge", "--abort"], check=False)

            if conflict_files or "CONFLICT" in merge.stdout:
                logger.warning("Merge conflict in %s: %s", feature_branch, ", ".join(conflict_files))
                return MergeResult(
                    status=MergeStatus.CONFLICT,
                    message=f"Merge conflict in {feature_branch}",
                    conflict_files=conflict_files,
                )
            return MergeResult(
                status=MergeStatus.ERROR,
                message=(merge.stderr or merge.stdout).strip(),
            )
        except subprocess.CalledProcessError as e:
            return MergeResult(status=MergeStatus.ERROR, message=(e.stderr or str(e)).strip())
        finally:
            if start_branch and start_branch != self.base_branch:
                restore = self._run_git(["checkout", start_branch], check=False)
                if restore.returncode != 0:
                    logger.warning("Failed to restore branch %s after merge", start_branch)
            if stashed:
                pop = self._run_git(["stash", "pop"], check=False)
                if pop.returncode != 0:
                    logger.warning("Failed to restore stash after merge; check git stash list")

    def verify_merge(self, feature_branch: str) -> bool:
        """The feature branch is now contained in base."""
        return self.is_ancestor(feature_branch, self.base_branch)

    # --- Pull requests ---

    def push_branch(self, branch: str) -> None:
        self._run_git(["push", "-u", "origin", branch], timeout=120)

    def create_pr(
        self,
        branch: str,
        title: str,
        body: str = "",
        draft: bool = True,
        repo: str | None = None,
    ) -> PrInfo:
        """Push a branch and open a pull request for it against base.

        Raises:
            subprocess.CalledProcessError: If push or PR creation fails.
        """
        self.push_branch(branch)

        args = ["pr", "create"]
        if repo:
            args.extend(["--repo", repo])
        args.extend([
            "--head", branch,
            "--base", self.base_branch,
            "--title", title,
            "--body", body,
        ])
        if draft:
            args.append("--draft")

        result = self._run_gh(args, timeout=60)
        pr_url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        match = _PR_NUMBER_RE.search(pr_url)
        number = int(match.group(1)) if match else None
        logger.info("PR created: %s", pr_url)
        return PrInfo(url=pr_url, number=number, created=True)
