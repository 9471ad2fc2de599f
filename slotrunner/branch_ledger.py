"""Append-only audit trail of every branch slotrunner creates.

One file per branch at branches/<sha256(branch)[:12]>.ledger, one JSON
object per line. The existence of a ledger file is what marks a branch
as ours.
"""

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from .config import get_branches_dir

logger = logging.getLogger(__name__)

LedgerAction = Literal["create", "merge", "delete", "abandon"]


@dataclass(frozen=True)
class LedgerEntry:
    timestamp: str
    action: str
    branch: str
    worktree: str
    issue_number: int
    pid: int
    detail: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerEntry":
        return cls(
            timestamp=str(data["timestamp"]),
            action=str(data["action"]),
            branch=str(data["branch"]),
            worktree=str(data.get("worktree", "")),
            issue_number=int(data["issue_number"]),
            pid=int(data["pid"]),
            detail=str(data.get("detail", "")),
        )


def branch_hash(branch: str) -> str:
    return hashlib.sha256(branch.encode("utf-8")).hexdigest()[:12]


def ledger_path(branch: str, branches_dir: Path | None = None) -> Path:
    return (branches_dir or get_branches_dir()) / f"{branch_hash(branch)}.ledger"


def append_entry(
    action: LedgerAction,
    branch: str,
    worktree: str | Path,
    issue_number: int,
    detail: str = "",
    branches_dir: Path | None = None,
) -> LedgerEntry:
    """Append one entry to the branch's ledger file."""
    entry = LedgerEntry(
        timestamp=datetime.now(tz=timezone.utc).isoformat(),
        action=action,
        branch=branch,
        worktree=str(worktree),
        issue_number=issue_number,
        pid=os.getpid(),
        detail=detail,
    )
    path = ledger_path(branch, branches_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(asdict(entry)) + "\n")
    return entry


def read_ledger(branch: str, branches_dir: Path | None = None) -> list[LedgerEntry]:
    """Read every entry for a branch, skipping lines that do not parse."""
    path = ledger_path(branch, branches_dir)
    if not path.exists():
        return []

    entries = []
    # Undecodable bytes become U+FFFD so the line fails json.loads and is skipped
    with open(path, encoding="utf-8", errors="replace") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(LedgerEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping corrupt ledger line %d in %s", lineno, path.name)
    return entries


def is_tracked_branch(branch: str, branches_dir: Path | None = None) -> bool:
    """Whether slotrunner ever created this branch."""
    return ledger_path(branch, branches_dir).exists()

