"""
Lock Manager
~~~~~~~~~~~~

Host-level mutual exclusion between hardening runs.

The lock is a single file ``<runtime_dir>/<scope>.lock`` created with
``O_CREAT | O_EXCL`` and holding ``pid<TAB>timestamp``. A lock whose
holder process is gone, or that is older than the staleness threshold,
is reclaimed automatically. Reclaiming happens under ``flock`` on a
sibling ``<scope>.lock.reclaim`` file.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from dataclasses import dataclass

from zerup_guard.exceptions import LockError, LockTimeout

__all__ = ["LockManager", "LockHandle", "LockInfo"]

logger = logging.getLogger(__name__)


@dataclass
class LockHandle:
    """Proof of ownership of a host lock."""

    scope: str
    path: str
    pid: int
    acquired_at: float
    released: bool = False


@dataclass
class LockInfo:
    """Current holder of a lock file, as read from disk."""

    path: str
    pid: int | None
    timestamp: float | None
    alive: bool
    stale: bool
    inode: int | None = None
    mtime: float | None = None

    @property
    def identity(self) -> tuple:
        """Distinguishes this lock file from a later one at the same path."""
        return (self.inode, self.mtime, self.pid, self.timestamp)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


class LockManager:
    """
    Serializes whole sessions at the host level.

    Args:
        runtime_dir: Directory holding lock files.
        stale_after_seconds: Age past which a lock is reclaimed even if
            its holder still appears to run.
        poll_interval_seconds: Delay between acquisition attempts.
    """

    def __init__(
        self,
        runtime_dir: str,
        stale_after_seconds: float = 3600.0,
        poll_interval_seconds: float = 0.25,
    ) -> None:
        self._runtime_dir = runtime_dir
        self._stale_after = stale_after_seconds
        self._poll_interval = poll_interval_seconds

    def lock_path(self, scope: str) -> str:
        return os.path.join(self._runtime_dir, f"{scope}.lock")

    def acquire(self, scope: str = "host", timeout: float = 30.0) -> LockHandle:
        """
        Acquire the lock for ``scope``, waiting up to ``timeout`` seconds.

        Raises:
            LockTimeout: If a live holder keeps the lock past the timeout.
            LockError: If the runtime directory cannot be used.
        """
        path = self.lock_path(scope)
        try:
            os.makedirs(self._runtime_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise LockError(f"Cannot create runtime directory {self._runtime_dir}: {exc}") from exc

        pid = os.getpid()
        start = time.monotonic()
        deadline = start + timeout

        while True:
            now = time.time()
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                info = self.inspect(scope)
                if info is None:
                    continue
                if info.stale:
                    self._reclaim(info)
                    continue
            except OSError as exc:
                raise LockError(f"Cannot create lock file {path}: {exc}") from exc
            else:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(f"{pid}\t{now:.6f}\n")
                    f.flush()
                    os.fsync(f.fileno())
                logger.debug("Acquired lock %s", path)
                return LockHandle(scope=scope, path=path, pid=pid, acquired_at=now)

            if time.monotonic() >= deadline:
                holder = info.pid
                raise LockTimeout(
                    f"Could not acquire {scope} lock within {timeout:.1f}s",
                    lock_path=path,
                    holder_pid=holder,
                    waited_seconds=time.monotonic() - start,
                )
            time.sleep(min(self._poll_interval, max(deadline - time.monotonic(), 0)))

    def release(self, handle: LockHandle) -> None:
        """
        Remove the lock file. Safe to call multiple times.

        The file is only removed while it still names this handle's
        process, so a lock reclaimed by another run is left alone.
        """
        if handle.released:
            return
        info = self.inspect(handle.scope)
        if info is not None and info.pid == handle.pid:
            try:
                os.unlink(handle.path)
            except FileNotFoundError:
                pass
            logger.debug("Released lock %s", handle.path)
        elif info is not None:
            logger.warning(
                "Lock %s is now held by pid %s; leaving it in place",
                handle.path,
                info.pid,
            )
        handle.released = True

    def inspect(self, scope: str = "host") -> LockInfo | None:
        """Describe the current lock holder, or None if unlocked."""
        return self._read(self.lock_path(scope))

    def _read(self, path: str) -> LockInfo | None:
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
                st = os.fstat(f.fileno())
        except FileNotFoundError:
            return None
        mtime = st.st_mtime

        pid: int | None = None
        timestamp: float | None = None
        parts = content.strip().split("\t")
        if len(parts) == 2:
            try:
                pid = int(parts[0])
                timestamp = float(parts[1])
            except ValueError:
                pid, timestamp = None, None

        # Garbled or half-written files are judged by file age alone.
        age = time.time() - (timestamp if timestamp is not None else mtime)
        alive = pid is not None and _pid_alive(pid)
        stale = age > self._stale_after or (pid is not None and not alive)
        return LockInfo(
            path=path,
            pid=pid,
            timestamp=timestamp,
            alive=alive,
            stale=stale,
            inode=st.st_ino,
            mtime=mtime,
        )

    def _reclaim(self, info: LockInfo) -> bool:
        """
        Remove a stale lock file, but only the one described by ``info``.

        Reclaimers serialize on ``flock`` over a sibling guard file and
        re-read the lock under it, so a lock another run has reclaimed
        and re-created since ``info`` was read is left in place.

        Returns:
            True if the stale file was removed.
        """
        guard_path = f"{info.path}.reclaim"
        try:
            guard = open(guard_path, "a", encoding="utf-8")
        except OSError as exc:
            raise LockError(f"Cannot open reclaim guard {guard_path}: {exc}") from exc

        with guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                current = self._read(info.path)
                if current is None or current.identity != info.identity:
                    logger.debug(
                        "Lock %s changed since it was inspected; not reclaiming", info.path
                    )
                    return False
                logger.warning(
                    "Reclaiming stale lock %s (pid=%s, alive=%s)",
                    info.path,
                    info.pid,
                    info.alive,
                )
                try:
                    os.unlink(info.path)
                except FileNotFoundError:
                    return False
                return True
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)
