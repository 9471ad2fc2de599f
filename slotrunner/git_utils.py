"""Git operations for slot worktrees, orphan cleanup and run guardrails."""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from . import branch_ledger
from .config import get_worktrees_dir
from .coordination import is_pid_alive
from .errors import WorktreeError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "slotrunner"
_BRANCH_RE = re.compile(rf"^{BRANCH_PREFIX}-(\d+)-(\d+)-")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def run_git(
    args: list[str],
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: int = 120,
) -> subprocess.CompletedProcess:
    """Run a git command.

    Args:
        args: Git command arguments (without 'git')
        cwd: Working directory for the command
        check: Raise exception on non-zero exit
        timeout: Seconds before the command is abandoned

    Returns:
        CompletedProcess instance
    """
    cmd = ["git"] + args
    return subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
        timeout=timeout,
    )


@dataclass
class WorktreeInfo:
    path: Path
    branch: str
    issue_number: int
    pid: int | None = None


@dataclass
class PreflightResult:
    ok: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Naming
# =============================================================================

def worktree_branch_name(issue_number: int, slug: str, pid: int) -> str:
    """Branch name embedding the owning PID so crashed runs can be detected."""
    safe_slug = _UNSAFE_CHARS.sub("-", slug)
    return f"{BRANCH_PREFIX}-{pid}-{issue_number}-{safe_slug}"


def worktree_path(repo_path: Path | str, branch: str, pid: int) -> Path:
    repo_name = _UNSAFE_CHARS.sub("-", Path(repo_path).name) or "repo"
    safe_branch = _UNSAFE_CHARS.sub("-", branch)
    return get_worktrees_dir() / f"{repo_name}-{pid}-{safe_branch}"


def parse_branch(branch: str) -> tuple[int, int] | None:
    """Return (pid, issue_number) for a slotrunner branch, else None."""
    match = _BRANCH_RE.match(branch)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


# =============================================================================
# Basic queries
# =============================================================================

def get_current_branch(path: Path | str) -> str | None:
    """Name of the checked-out branch, or None on detached HEAD."""
    result = run_git(["branch", "--show-current"], cwd=path, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def branch_exists(repo_path: Path | str, branch: str) -> bool:
    result = run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path, check=False)
    return result.returncode == 0


def has_uncommitted_changes(path: Path | str) -> bool:
    result = run_git(["status", "--porcelain"], cwd=path, check=False)
    return bool(result.stdout.strip())


def has_changes(worktree: Path | str, base_branch: str) -> bool:
    """Whether a worktree holds uncommitted edits or commits beyond base."""
    if has_uncommitted_changes(worktree):
        return True
    result = run_git(["diff", "--stat", f"{base_branch}...HEAD"], cwd=worktree, check=False)
    return result.returncode == 0 and bool(result.stdout.strip())


def commit_changes(worktree: Path | str, message: str) -> bool:
    """Stage and commit everything in the worktree.

    Returns:
        True if a commit was made, False if there was nothing to commit
    """
    run_git(["add", "-A"], cwd=worktree)
    result = run_git(["diff", "--cached", "--quiet"], cwd=worktree, check=False)
    if result.returncode == 0:
        return False
    run_git(["commit", "-m", message], cwd=worktree)
    return True


# =============================================================================
# Worktree lifecycle
# =============================================================================

def create_worktree(
    repo_path: Path | str,
    base_branch: str,
    issue_number: int,
    slug: str,
    pid: int,
) -> WorktreeInfo:
    """Create a worktree on a new branch cut from base_branch.

    A partial failure removes whatever was created before raising.

    Raises:
        WorktreeError: if git could not create the worktree
    """
    branch = worktree_branch_name(issue_number, slug, pid)
    path = worktree_path(repo_path, branch, pid)
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        run_git(["worktree", "add", "-b", branch, str(path), base_branch], cwd=repo_path)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        logger.warning("Worktree creation failed for %s, rolling back", branch)
        if path.exists():
            run_git(["worktree", "remove", "--force", str(path)], cwd=repo_path, check=False)
        run_git(["worktree", "prune"], cwd=repo_path, check=False)
        if branch_exists(repo_path, branch):
            run_git(["branch", "-D", branch], cwd=repo_path, check=False)
        detail = getattr(e, "stderr", "") or str(e)
        raise WorktreeError(
            f"Failed to create worktree for issue #{issue_number}: {str(detail).strip()}"
        ) from e

    branch_ledger.append_entry(
        "create", branch, path, issue_number, detail=f"from {base_branch}"
    )
    logger.info("Created worktree %s at %s", branch, path)
    return WorktreeInfo(path=path, branch=branch, issue_number=issue_number, pid=pid)


def remove_worktree(
    repo_path: Path | str,
    path: Path | str,
    branch: str,
    issue_number: int,
    delete_branch: bool = False,
) -> None:
    """Remove a worktree and optionally its branch. Never raises on git errors."""
    path = Path(path)
    if path.exists():
        result = run_git(["worktree", "remove", "--force", str(path)], cwd=repo_path, check=False)
        if result.returncode != 0:
            logger.warning("Failed to remove worktree %s: %s", path, result.stderr.strip())
        else:
            logger.debug("Removed worktree %s", path)
    run_git(["worktree", "prune"], cwd=repo_path, check=False)

    if delete_branch:
        result = run_git(["branch", "-D", branch], cwd=repo_path, check=False)
        if result.returncode != 0:
            logger.warning("Failed to delete branch %s: %s", branch, result.stderr.strip())
            return
        branch_ledger.append_entry(
            "delete", branch, path, issue_number, detail="cleanup after removal"
        )
        logger.debug("Deleted branch %s", branch)


def _parse_worktree_list(output: str) -> list[tuple[Path, str]]:
    """Extract (path, branch) pairs from `git worktree list --porcelain`."""
    entries = []
    for block in output.split("\n\n"):
        path = branch = None
        for line in block.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree "):]
            elif line.startswith("branch "):
                branch = line[len("branch "):].removeprefix("refs/heads/")
        if path and branch:
            entries.append((Path(path), branch))
    return entries


def list_worktrees(repo_path: Path | str) -> list[WorktreeInfo]:
    """All worktrees of the repo whose branch follows the slotrunner pattern."""
    result = run_git(["worktree", "list", "--porcelain"], cwd=repo_path, check=False)
    if result.returncode != 0:
        logger.debug("Could not list worktrees: %s", result.stderr.strip())
        return []

    worktrees = []
    for path, branch in _parse_worktree_list(result.stdout):
        parsed = parse_branch(branch)
        if parsed is None:
            continue
        pid, issue_number = parsed
        worktrees.append(WorktreeInfo(path=path, branch=branch, issue_number=issue_number, pid=pid))
    return worktrees


def scan_orphaned_worktrees(repo_path: Path | str) -> list[WorktreeInfo]:
    """Slotrunner worktrees whose owning process is gone."""
    return [wt for wt in list_worktrees(repo_path) if wt.pid is not None and not is_pid_alive(wt.pid)]


def clean_orphaned_worktrees(repo_path: Path | str) -> int:
    """Remove orphaned worktrees along with their branches.

    Returns:
        Number of worktrees removed
    """
    cleaned = 0
    for wt in scan_orphaned_worktrees(repo_path):
        result = run_git(["worktree", "remove", "--force", str(wt.path)], cwd=repo_path, check=False)
        if result.returncode != 0:
            logger.warning("Failed to clean orphaned worktree %s: %s", wt.path, result.stderr.strip())
            continue
        cleaned += 1
        logger.info("Cleaned orphaned worktree %s (dead PID %s)", wt.path, wt.pid)

        # A name that merely looks like ours is not enough to delete it
        if not branch_ledger.is_tracked_branch(wt.branch):
            logger.warning("Keeping untracked branch %s (no ledger)", wt.branch)
            continue

        result = run_git(["branch", "-D", wt.branch], cwd=repo_path, check=False)
        if result.returncode == 0:
            branch_ledger.append_entry(
                "delete", wt.branch, wt.path, wt.issue_number, detail=f"orphan of PID {wt.pid}"
            )
        else:
            logger.debug("Could not delete branch %s (may already be gone)", wt.branch)

    if cleaned:
        run_git(["worktree", "prune"], cwd=repo_path, check=False)
    return cleaned


# =============================================================================
# Guardrails
# =============================================================================

def preflight_checks(repo_path: Path | str, base_branch: str) -> PreflightResult:
    """Check the shared checkout before a run.

    A missing repository or base branch is an error. A dirty tree,
    being on another branch, or a failed fetch only produce warnings.
    """
    result = PreflightResult(ok=True)
    repo_path = Path(repo_path)

    if not repo_path.is_dir():
        result.errors.append(f"Repository path does not exist: {repo_path}")
        result.ok = False
        return result

    if run_git(["rev-parse", "--git-dir"], cwd=repo_path, check=False).returncode != 0:
        result.errors.append(f"Not a git repository: {repo_path}")
        result.ok = False
        return result

    if not branch_exists(repo_path, base_branch):
        result.errors.append(f'Base branch "{base_branch}" does not exist')

    status = run_git(["status", "--porcelain"], cwd=repo_path, check=False)
    if status.returncode != 0:
        result.errors.append(f"Failed to check git status: {status.stderr.strip()}")
    elif status.stdout.strip():
        count = len(status.stdout.strip().splitlines())
        result.warnings.append(
            f"Working tree has {count} uncommitted change(s); merges will stash them"
        )

    current = get_current_branch(repo_path)
    if current is None:
        result.warnings.append("Detached HEAD state detected")
    elif current != base_branch:
        result.warnings.append(
            f'Currently on "{current}", not "{base_branch}"; worktrees will branch from "{base_branch}"'
        )

    remotes = run_git(["remote"], cwd=repo_path, check=False).stdout.split()
    if "origin" in remotes:
        fetch = run_git(["fetch", "--quiet", "origin", base_branch], cwd=repo_path, check=False, timeout=60)
        if fetch.returncode != 0:
            result.warnings.append("Could not fetch from origin; working with local state")

    for warning in result.warnings:
        logger.warning("Preflight: %s", warning)
    result.ok = not result.errors
    return result


def post_run_audit(
    repo_path: Path | str,
    base_branch: str,
    start_branch: str | None = None,
) -> list[str]:
    """Look for debris a run may have left in the shared checkout."""
    warnings = []

    orphans = scan_orphaned_worktrees(repo_path)
    if orphans:
        names = ", ".join(wt.path.name for wt in orphans)
        warnings.append(f"{len(orphans)} orphaned worktree(s) found: {names}")

    expected = start_branch or base_branch
    current = get_current_branch(repo_path)
    if current is not None and current != expected:
        warnings.append(f"Expected to be on {expected}, but on {current}")

    stashes = run_git(["stash", "list"], cwd=repo_path, check=False).stdout
    ours = [line for line in stashes.splitlines() if f"{BRANCH_PREFIX}-pre-merge" in line]
    if ours:
        warnings.append(f"{len(ours)} slotrunner stash entries found; consider cleaning up")

    for warning in warnings:
        logger.warning("Post-run audit: %s", warning)
    return warnings
