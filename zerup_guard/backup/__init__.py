"""zerup-guard backup store: checksummed snapshots and key=value metadata."""

from zerup_guard.backup.atomic import atomic_write_bytes
from zerup_guard.backup.store import BackupStore

__all__ = ["BackupStore", "atomic_write_bytes"]
