# src/marketplace_bff/locks.py

import os
import time
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Callable, Iterator, Tuple


class StoreLockTimeout(RuntimeError):
    """Another worker held the session store's write lock for too long."""


def _platform_lock_ops() -> Tuple[Callable[[int], None], Callable[[int], None]]:
    # Both functions take a file descriptor; the try function raises OSError when the lock is held.
    if os.name == "nt":
        import msvcrt  # type: ignore

        return (
            lambda fd: msvcrt.locking(fd, msvcrt.LK_NBLCK, 1),
            lambda fd: msvcrt.locking(fd, msvcrt.LK_UNLCK, 1),
        )
    import fcntl

    return (
        lambda fd: fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB),
        lambda fd: fcntl.flock(fd, fcntl.LOCK_UN),
    )


_try_lock, _unlock = _platform_lock_ops()


def _wait_for_lock(fd: int, lock_path: Path, timeout_s: float, poll_interval_s: float) -> None:
    deadline = time.monotonic() + timeout_s
    while True:
        try:
            _try_lock(fd)
            return
        except OSError:
            if time.monotonic() >= deadline:
                raise StoreLockTimeout(f"write lock {lock_path.name} still held after {timeout_s}s") from None
            time.sleep(poll_interval_s)


@contextmanager
def store_write_lock(path: Path, *, timeout_s: float = 5.0, poll_interval_s: float = 0.02) -> Iterator[None]:
    """
    Hold the write lock that sits next to a session database file.

    Every worker process (uvicorn --workers N) opens the same lock file, so a
    rotate in one worker cannot interleave with a rotate or delete in another.
    The in-process threading.Lock in the store is taken first; this only
    serialises across processes.
    """
    lock_path = Path(path).resolve()
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as fp:
        fd = fp.fileno()
        _wait_for_lock(fd, lock_path, float(timeout_s), float(poll_interval_s))
        try:
            yield
        finally:
            with suppress(OSError):
                _unlock(fd)
