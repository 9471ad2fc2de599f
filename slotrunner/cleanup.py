"""Reaping watcher processes that engines leave behind in worktrees."""

import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path

from .config import get_worktrees_dir

logger = logging.getLogger(__name__)

ORPHAN_PATTERNS = [
    re.compile(r"tsc.*--watch"),
    re.compile(r"eslint.*--fix"),
    re.compile(r"vitest.*run"),
    re.compile(r"jest.*--runInBand"),
]

TERM_GRACE_SECONDS = 0.5


def _list_processes() -> list[tuple[int, int, str]]:
    """(pid, ppid, command) for every process, via ps."""
    result = subprocess.run(
        ["ps", "-eo", "pid=,ppid=,args="],
        capture_output=True,
        text=True,
        check=True,
        timeout=30,
    )
    processes = []
    for line in result.stdout.splitlines():
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        try:
            processes.append((int(parts[0]), int(parts[1]), parts[2]))
        except ValueError:
            continue
    return processes


def _process_cwd(pid: int) -> str | None:
    """Working directory of a process: /proc first, lsof where there is no /proc."""
    try:
        return os.readlink(f"/proc/{pid}/cwd")
    except OSError:
        pass
    try:
        result = subprocess.run(
            ["lsof", "-a", "-p", str(pid), "-d", "cwd", "-Fn"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    for line in result.stdout.splitlines():
        if line.startswith("n"):
            return line[1:]
    return None


def _is_under(path: str, base: Path) -> bool:
    try:
        Path(path).resolve().relative_to(base.resolve())
        return True
    except ValueError:
        return False


def reap_orphaned_processes(worktrees_dir: Path | None = None) -> int:
    """Kill known watcher processes running inside slotrunner worktrees.

    Only processes whose parent is init or this process are touched.

    Returns:
        Number of processes signalled
    """
    base = worktrees_dir or get_worktrees_dir()
    me = os.getpid()
    killed = 0

    try:
        processes = _list_processes()
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Could not scan for orphaned processes: %s", e)
        return 0

    for pid, ppid, command in processes:
        if pid <= 1 or pid == me:
            continue
        if not any(p.search(command) for p in ORPHAN_PATTERNS):
            continue
        if ppid not in (1, me):
            continue
        cwd = _process_cwd(pid)
        if cwd is None or not _is_under(cwd, base):
            continue

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        time.sleep(TERM_GRACE_SECONDS)
        try:
            os.kill(pid, signal.SIGKILL)
            logger.debug("Escalated to SIGKILL for process %d: %s", pid, command[:80])
        except ProcessLookupError:
            pass
        killed += 1
        logger.debug("Killed orphaned process %d: %s", pid, command[:80])

    if killed:
        logger.info("Reaped %d orphaned process(es)", killed)
    return killed
