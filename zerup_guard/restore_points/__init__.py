"""zerup-guard restore points: named multi-target snapshots."""

from zerup_guard.restore_points.manager import RestorePointManager

__all__ = ["RestorePointManager"]
