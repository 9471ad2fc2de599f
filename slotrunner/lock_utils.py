"""Cross-process file locking using fcntl.flock."""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator


def acquire_lock(path: Path | str, blocking: bool = False) -> int | None:
    """Acquire an exclusive lock on a file.

    Args:
        path: Path to the lock file
        blocking: If True, wait for lock. If False, return None if can't acquire.

    Returns:
        File descriptor if lock acquired, None if non-blocking and lock unavailable.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)

    try:
        flags = fcntl.LOCK_EX
        if not blocking:
            flags |= fcntl.LOCK_NB
        fcntl.flock(fd, flags)
        return fd
    except OSError:
        os.close(fd)
        return None


def release_lock(fd: int | None) -> None:
    """Release a lock by closing the file descriptor."""
    if fd is None:
        return
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextmanager
def locked_with_timeout(
    path: Path | str, timeout: float, poll_interval: float = 0.1
) -> Generator[bool, None, None]:
    """Poll for the lock until timeout seconds have elapsed.

    Yields:
        True once the lock is held, False if the timeout expired first
    """
    deadline = time.monotonic() + timeout
    fd = acquire_lock(path, blocking=False)
    while fd is None and time.monotonic() < deadline:
        time.sleep(poll_interval)
        fd = acquire_lock(path, blocking=False)
    try:
        yield fd is not None
    finally:
        release_lock(fd)
