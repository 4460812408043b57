"""File locking utilities using fcntl.flock.

The ``dispatch`` command takes the dispatch lock so two scheduled CLI runs
never walk the queue at the same time. Fire-and-forget dispatch from the
checklist evaluator does not take it.
"""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator


def acquire_lock(path: Path | str, blocking: bool = False) -> int | None:
    """Acquire an exclusive lock on a file.

    Args:
        path: Path to the lock file (created if missing)
        blocking: Wait for the lock instead of giving up

    Returns:
        File descriptor holding the lock, or None if it is held elsewhere
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)

    flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
    try:
        fcntl.flock(fd, flags)
    except OSError:
        os.close(fd)
        return None
    return fd


def release_lock(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@contextmanager
def locked_or_skip(path: Path | str) -> Generator[bool, None, None]:
    """Hold the lock for the block if it is free.

    Yields:
        True if the lock was acquired, False if another process holds it

    Example:
        with locked_or_skip(get_dispatch_lock_path()) as acquired:
            if not acquired:
                return
    """
    fd = acquire_lock(path, blocking=False)
    try:
        yield fd is not None
    finally:
        if fd is not None:
            release_lock(fd)
