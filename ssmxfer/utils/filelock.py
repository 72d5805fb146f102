"""
Cross-platform advisory file lock

- Unix/Linux/macOS: fcntl.flock
- Windows: msvcrt.locking

Usage:
    with locked(Path("registry.json.lock"), timeout=30):
        ...  # critical section
"""
import contextlib
import os
import time
from pathlib import Path


class FileLockError(Exception):
    """Lock operation failed"""


class LockAcquisitionError(FileLockError):
    """Lock is held by another process"""


def acquire_lock(file_handle, non_blocking: bool = True):
    """
    Take an exclusive lock on an open file.

    Raises LockAcquisitionError when non_blocking and the lock is held
    elsewhere, FileLockError for any other failure.
    """
    if os.name == "nt":
        _acquire_lock_windows(file_handle, non_blocking)
    else:
        _acquire_lock_unix(file_handle, non_blocking)


def release_lock(file_handle):
    if os.name == "nt":
        _release_lock_windows(file_handle)
    else:
        _release_lock_unix(file_handle)


@contextlib.contextmanager
def locked(lock_path: Path, timeout: float, poll: float = 0.05):
    """
    Hold an exclusive lock on lock_path for the duration of the block.
    Polls a non-blocking acquire until timeout seconds have passed.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fh = open(lock_path, "a+", encoding="utf-8")
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                acquire_lock(fh, non_blocking=True)
                break
            except LockAcquisitionError:
                if time.monotonic() >= deadline:
                    raise LockAcquisitionError(
                        f"timed out after {timeout:.0f}s waiting for {lock_path}"
                    )
                time.sleep(poll)
        try:
            yield fh
        finally:
            release_lock(fh)
    finally:
        fh.close()


# ── Unix ────────────────────────────────────────────────────────────────────

def _acquire_lock_unix(file_handle, non_blocking: bool):
    import fcntl

    flags = fcntl.LOCK_EX
    if non_blocking:
        flags |= fcntl.LOCK_NB
    try:
        fcntl.flock(file_handle.fileno(), flags)
    except BlockingIOError as e:
        raise LockAcquisitionError(
            f"Lock is held by another process: {file_handle.name}"
        ) from e
    except OSError as e:
        raise FileLockError(f"fcntl.flock failed: {e}") from e


def _release_lock_unix(file_handle):
    import fcntl

    try:
        fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        raise FileLockError(f"fcntl.flock unlock failed: {e}") from e


# ── Windows ─────────────────────────────────────────────────────────────────

def _acquire_lock_windows(file_handle, non_blocking: bool):
    import msvcrt

    mode = msvcrt.LK_NBLCK if non_blocking else msvcrt.LK_LOCK
    try:
        file_handle.seek(0)
        msvcrt.locking(file_handle.fileno(), mode, 1)
    except OSError as e:
        # 13 / 36: held by someone else
        if e.errno in (13, 36):
            raise LockAcquisitionError(
                f"Lock is held by another process: {file_handle.name}"
            ) from e
        raise FileLockError(f"msvcrt.locking failed: {e}") from e


def _release_lock_windows(file_handle):
    import msvcrt

    try:
        file_handle.seek(0)
        msvcrt.locking(file_handle.fileno(), msvcrt.LK_UNLCK, 1)
    except OSError as e:
        raise FileLockError(f"msvcrt.locking unlock failed: {e}") from e
