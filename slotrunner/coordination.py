"""Cross-process coordination through the shared runtime directory.

Two kinds of record live under the slotrunner home:

    instances/<pid>.lock   one per running slotrunner process
    claims/<issue>.claim   one per issue being worked on

Claims rely on exclusive file creation (a hard link onto the claim path,
which fails if it exists): the process whose create succeeds owns the
issue. A claim whose holder PID is dead, or whose content cannot be
parsed, is reclaimed by deleting it and retrying the exclusive create
exactly once, under an flock on claims/.reclaim.lock so that only one
process reclaims at a time.

Every mutation is appended to logs/coordination_audit.jsonl so a crash
can be reconstructed after the fact.
"""

import json
import logging
import os
import socket
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .config import get_home_dir
from .lock_utils import acquire_lock, release_lock

logger = logging.getLogger(__name__)


def is_pid_alive(pid: int) -> bool:
    """Check whether a process with the given PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class InstanceLock:
    pid: int
    label: str
    started_at: str
    hostname: str
    issues: list[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "InstanceLock":
        return cls(
            pid=int(data["pid"]),
            label=str(data["label"]),
            started_at=str(data.get("started_at", "")),
            hostname=str(data.get("hostname", "")),
            issues=[int(n) for n in data.get("issues", [])],
        )


@dataclass
class Claim:
    issue_number: int
    holder_pid: int
    claimed_at: str

    @classmethod
    def from_dict(cls, issue_number: int, data: dict) -> "Claim":
        return cls(
            issue_number=issue_number,
            holder_pid=int(data["pid"]),
            claimed_at=str(data.get("claimed_at", "")),
        )


class Coordinator:
    """Instance locks and issue claims for one process.

    Args:
        root: Runtime directory (defaults to the slotrunner home)
        pid: PID recorded as the owner of locks and claims
        hostname: Recorded in the instance lock for diagnostics
    """

    def __init__(
        self,
        root: Path | None = None,
        pid: int | None = None,
        hostname: str | None = None,
    ):
        self.root = Path(root) if root is not None else get_home_dir()
        self.pid = pid if pid is not None else os.getpid()
        self.hostname = hostname or socket.gethostname()

    @property
    def instances_dir(self) -> Path:
        return self.root / "instances"

    @property
    def claims_dir(self) -> Path:
        return self.root / "claims"

    @property
    def reclaim_lock_path(self) -> Path:
        return self.claims_dir / ".reclaim.lock"

    @property
    def audit_path(self) -> Path:
        return self.root / "logs" / "coordination_audit.jsonl"

    def _lock_path(self, pid: int) -> Path:
        return self.instances_dir / f"{pid}.lock"

    def _claim_path(self, issue_number: int) -> Path:
        return self.claims_dir / f"{issue_number}.claim"

    def _audit(self, action: str, **fields) -> None:
        try:
            self.audit_path.parent.mkdir(parents=True, exist_ok=True)
            entry = {"ts": _now_iso(), "action": action, "pid": self.pid, **fields}
            with open(self.audit_path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError:
            logger.debug("Could not write coordination audit entry for %s", action)

    # ------------------------------------------------------------------
    # Instance locks
    # ------------------------------------------------------------------

    def acquire_lock(self, label: str) -> InstanceLock:
        """Write this process's instance lock (temp file, then rename)."""
        lock = InstanceLock(
            pid=self.pid,
            label=label,
            started_at=_now_iso(),
            hostname=self.hostname,
        )
        self._write_lock(lock)
        self._audit("lock_acquired", label=label)
        logger.debug("Instance lock acquired (pid=%d label=%s)", self.pid, label)
        return lock

    def _write_lock(self, lock: InstanceLock) -> None:
        path = self._lock_path(lock.pid)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".lock_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(asdict(lock), f, indent=2)
            os.rename(temp_path, path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def release_lock(self) -> None:
        """Remove this process's instance lock. Missing file is fine."""
        try:
            self._lock_path(self.pid).unlink()
            self._audit("lock_released")
            logger.debug("Instance lock released (pid=%d)", self.pid)
        except FileNotFoundError:
            pass

    def record_issue(self, issue_number: int) -> None:
        """Add an issue number to our instance lock, if we hold one."""
        lock = self._read_lock(self._lock_path(self.pid))
        if lock is None or issue_number in lock.issues:
            return
        lock.issues.append(issue_number)
        self._write_lock(lock)

    def _read_lock(self, path: Path) -> InstanceLock | None:
        try:
            with open(path) as f:
                return InstanceLock.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def active_instances(self) -> list[InstanceLock]:
        """Return live instance locks, deleting stale and corrupt ones."""
        if not self.instances_dir.exists():
            return []

        live = []
        for path in sorted(self.instances_dir.glob("*.lock")):
            lock = self._read_lock(path)
            if lock is None:
                logger.warning("Removing corrupt instance lock %s", path.name)
                self._unlink_quietly(path)
                self._audit("lock_corrupt_removed", file=path.name)
                continue
            if lock.pid != self.pid and not is_pid_alive(lock.pid):
                logger.info("Removing stale instance lock for dead PID %d", lock.pid)
                self._unlink_quietly(path)
                self._audit("lock_stale_removed", stale_pid=lock.pid, label=lock.label)
                continue
            live.append(lock)
        return live

    def conflicting_instance(self, label: str) -> InstanceLock | None:
        """Find a live instance with the same label and a different PID."""
        for lock in self.active_instances():
            if lock.label == label and lock.pid != self.pid:
                return lock
        return None

    # ------------------------------------------------------------------
    # Issue claims
    # ------------------------------------------------------------------

    def claim_issue(self, issue_number: int) -> bool:
        """Claim an issue for this process.

        Returns:
            True if the claim file was created by us, False if another
            live process holds it (or won a race for it).
        """
        self.claims_dir.mkdir(parents=True, exist_ok=True)
        path = self._claim_path(issue_number)

        if self._create_claim(path):
            self._audit("claimed", issue=issue_number)
            logger.debug("Claimed issue #%d", issue_number)
            return True

        # One reclaimer at a time reads, unlinks and re-creates
        fd = acquire_lock(self.reclaim_lock_path, blocking=True)
        if fd is None:
            logger.warning("Could not lock %s; treating #%d as claimed", self.reclaim_lock_path, issue_number)
            return False
        try:
            holder = self.claim_holder(issue_number)
            if holder is not None and is_pid_alive(holder.holder_pid):
                logger.debug("Issue #%d already claimed by PID %d", issue_number, holder.holder_pid)
                return False

            if path.exists():
                reason = "corrupt" if holder is None else f"dead_pid={holder.holder_pid}"
                logger.info("Reclaiming issue #%d from stale claim (%s)", issue_number, reason)
                self._unlink_quietly(path)
                self._audit("claim_stale_removed", issue=issue_number, reason=reason)

            if self._create_claim(path):
                self._audit("claimed", issue=issue_number, reclaimed=True)
                return True
        finally:
            release_lock(fd)

        logger.debug("Lost race reclaiming issue #%d", issue_number)
        return False

    def _create_claim(self, path: Path) -> bool:
        # Content is written to a private temp file first and hard-linked
        # into place; link() fails if the target exists, so readers never
        # see a half-written claim.
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".claim_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"pid": self.pid, "claimed_at": _now_iso()}, f)
            os.link(temp_path, path)
            return True
        except FileExistsError:
            return False
        finally:
            os.unlink(temp_path)

    def claim_holder(self, issue_number: int) -> Claim | None:
        """Read the claim for an issue. Returns None if absent or unreadable."""
        try:
            with open(self._claim_path(issue_number)) as f:
                return Claim.from_dict(issue_number, json.load(f))
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def release_issue(self, issue_number: int) -> None:
        """Delete the claim only if this process holds it."""
        holder = self.claim_holder(issue_number)
        if holder is None or holder.holder_pid != self.pid:
            return
        self._unlink_quietly(self._claim_path(issue_number))
        self._audit("released", issue=issue_number)
        logger.debug("Released claim on issue #%d", issue_number)

    @staticmethod
    def _unlink_quietly(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
