"""
Default Configuration
~~~~~~~~~~~~~~~~~~~~~

Defaults for zerup-guard when no config file is provided. Paths match
the directories the hardening scripts have always used.
"""

from __future__ import annotations

__all__ = ["DEFAULT_CONFIG"]

DEFAULT_CONFIG: dict = {
    "version": "1.0",
    "paths": {
        "backup_root": "/var/backups/zerup",
        "restore_point_root": "/var/backups/zerup/rollback",
        "runtime_dir": "/run/zerup",
        "audit_journal": None,
    },
    "backup": {
        "retention_days": 30,
        "min_free_bytes": 100 * 1024 * 1024,
        "dir_mode": 0o700,
    },
    "lock": {
        "scope": "host",
        "timeout_seconds": 30.0,
        "stale_after_seconds": 3600.0,
        "poll_interval_seconds": 0.25,
    },
    "validation": {
        "hook_timeout_seconds": 10.0,
        "health_check_timeout_seconds": 5.0,
        "reload_timeout_seconds": 30.0,
    },
    "session": {
        "mode": "interactive",
        "non_interactive_default": True,
    },
    "restore_points": {
        "restore_order": [],
        "safety_snapshot": True,
    },
    "logging": {
        "level": "INFO",
    },
}
