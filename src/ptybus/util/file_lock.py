from __future__ import annotations

import fcntl
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator


def acquire_lockfile(path: Path) -> IO[bytes]:
    """Open + flock a lockfile, waiting for any holder. Keep the returned handle open to hold the lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("a+b")
    try:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
    except OSError:
        f.close()
        raise
    return f


def release_lockfile(f: IO[bytes]) -> None:
    try:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except OSError:
        pass
    try:
        f.close()
    except OSError:
        pass


@contextmanager
def locked(path: Path) -> Iterator[None]:
    f = acquire_lockfile(path)
    try:
        yield
    finally:
        release_lockfile(f)
