"""Shared lessons file carried between the main checkout and worktrees.

Engines may append `- ` bullet lines to SLOTRUNNER_LESSONS.md in their
worktree; after a slot finishes, bullets not yet in the main copy are
appended to it. The file is listed in the repository's info/exclude so
a copy in a worktree never shows up as a change.
"""

import logging
import shutil
from datetime import date
from pathlib import Path

from .git_utils import run_git

logger = logging.getLogger(__name__)

LESSONS_FILENAME = "SLOTRUNNER_LESSONS.md"
LESSONS_HEADER = "# Lessons Learned\n\nAuto-maintained by slotrunner. Do not edit manually.\n\n"


def read_lessons(repo_path: Path | str) -> str | None:
    path = Path(repo_path) / LESSONS_FILENAME
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def _ensure_excluded(worktree: Path) -> None:
    result = run_git(["rev-parse", "--git-common-dir"], cwd=worktree, check=False)
    if result.returncode != 0:
        return
    common_dir = Path(result.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = worktree / common_dir
    exclude = common_dir / "info" / "exclude"
    existing = exclude.read_text() if exclude.exists() else ""
    if LESSONS_FILENAME in existing.splitlines():
        return
    exclude.parent.mkdir(parents=True, exist_ok=True)
    with open(exclude, "a") as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(LESSONS_FILENAME + "\n")


def propagate_lessons(repo_path: Path | str, worktree: Path | str) -> None:
    """Copy the main lessons file into a worktree, if there is one."""
    src = Path(repo_path) / LESSONS_FILENAME
    if not src.exists():
        return
    worktree = Path(worktree)
    try:
        _ensure_excluded(worktree)
        shutil.copyfile(src, worktree / LESSONS_FILENAME)
        logger.debug("Propagated %s to %s", LESSONS_FILENAME, worktree)
    except OSError as e:
        logger.warning("Failed to propagate lessons: %s", e)


def add_lesson(repo_path: Path | str, lesson: str) -> None:
    path = Path(repo_path) / LESSONS_FILENAME
    content = path.read_text(encoding="utf-8") if path.exists() else LESSONS_HEADER
    content += f"- **{date.today().isoformat()}**: {lesson}\n"
    path.write_text(content, encoding="utf-8")


def _bullets(content: str) -> list[str]:
    return [line for line in content.splitlines() if line.startswith("- ")]


def merge_lessons_back(worktree: Path | str, repo_path: Path | str) -> int:
    """Append lessons found only in the worktree copy.

    Returns:
        Number of lessons added to the main copy
    """
    src = Path(worktree) / LESSONS_FILENAME
    if not src.exists():
        return 0
    dst = Path(repo_path) / LESSONS_FILENAME
    dst_content = dst.read_text(encoding="utf-8") if dst.exists() else LESSONS_HEADER

    known = set(_bullets(dst_content))
    new = []
    for line in _bullets(src.read_text(encoding="utf-8")):
        if line not in known:
            new.append(line)
            known.add(line)
    if not new:
        return 0

    if not dst_content.endswith("\n"):
        dst_content += "\n"
    dst.write_text(dst_content + "\n".join(new) + "\n", encoding="utf-8")
    logger.debug("Merged %d new lesson(s) from worktree", len(new))
    return len(new)
