"""Advisory whole-file locks used to serialize load-modify-store writers.

Readers never take these locks: every record is swapped in atomically, so a
reader always sees either the previous or the next complete document.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator


class LockUnavailableError(RuntimeError):
    """Raised when a non-blocking lock is already held elsewhere."""


def _lock_fd(fd: int, *, blocking: bool) -> None:
    if os.name == "nt":
        import msvcrt  # Windows only

        msvcrt.locking(fd, msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK, 1)
        return
    import fcntl  # POSIX only

    flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
    fcntl.flock(fd, flags)


def _unlock_fd(fd: int) -> None:
    if os.name == "nt":
        import msvcrt  # Windows only

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        return
    import fcntl  # POSIX only

    fcntl.flock(fd, fcntl.LOCK_UN)


def acquire_lockfile(path: Path, *, blocking: bool = True) -> IO[bytes]:
    """Open and lock `path`. Keep the returned handle open to hold the lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("r+b") if path.exists() else path.open("w+b")
    try:
        # Windows region locks need at least one byte.
        f.seek(0, os.SEEK_END)
        if f.tell() <= 0:
            f.write(b"\0")
            f.flush()
        f.seek(0)
        _lock_fd(f.fileno(), blocking=blocking)
    except OSError as e:
        f.close()
        if not blocking:
            raise LockUnavailableError(str(e)) from e
        raise
    except BaseException:
        f.close()
        raise
    return f


def release_lockfile(f: IO[bytes]) -> None:
    try:
        _unlock_fd(f.fileno())
    except OSError:
        pass
    f.close()


@contextmanager
def locked(path: Path, *, blocking: bool = True) -> Iterator[IO[bytes]]:
    f = acquire_lockfile(path, blocking=blocking)
    try:
        yield f
    finally:
        release_lockfile(f)
