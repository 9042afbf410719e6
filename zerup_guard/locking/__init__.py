"""zerup-guard host locking."""

from zerup_guard.locking.lock_manager import LockHandle, LockInfo, LockManager

__all__ = ["LockManager", "LockHandle", "LockInfo"]
