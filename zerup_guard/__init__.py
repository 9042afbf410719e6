"""
zerup-guard: transactional configuration changes for server hardening.

zerup-guard sits between a hardening module (SSH, UFW, Fail2Ban) and the
files, services and rule sets it edits, providing:

- Checksummed backups taken before every write
- Validation before commit, and reload plus health check for services
- Per-target failure policy (critical aborts the run, advisory continues)
- Session-wide rollback in reverse application order
- Named restore points for manual recovery
- A host lock so two runs never interleave

Quick Start::

    from zerup_guard import ConfigGuard, Criticality, SessionMode, Target, TargetKind

    guard = ConfigGuard.default()
    sshd = Target(
        id="sshd_config",
        kind=TargetKind.SERVICE,
        locator="/etc/ssh/sshd_config",
        criticality=Criticality.CRITICAL,
        metadata={"service": "ssh", "port": 2222,
                  "validate_command": ["sshd", "-t", "-f", "{path}"]},
    )

    with guard.session(SessionMode.NON_INTERACTIVE) as session:
        guard.propose(session, sshd, new_config)
        report = guard.run(session)
"""

from zerup_guard.adapters.base import TargetAdapter
from zerup_guard.adapters.file_adapter import FileAdapter
from zerup_guard.adapters.registry import AdapterRegistry
from zerup_guard.adapters.ruleset_adapter import RulesetAdapter
from zerup_guard.adapters.service_adapter import ServiceAdapter
from zerup_guard.backup.store import BackupStore
from zerup_guard.core.engine import ConfigGuard
from zerup_guard.core.models import (
    AuditEntry,
    BackupRecord,
    Change,
    ChangeOutcome,
    RestorePoint,
    RestoreReport,
    Session,
    SessionReport,
    Target,
)
from zerup_guard.core.states import (
    ChangeState,
    Criticality,
    SessionMode,
    SessionStatus,
    TargetKind,
)
from zerup_guard.locking.lock_manager import LockHandle, LockManager
from zerup_guard.observability.audit_log import AuditLog
from zerup_guard.restore_points.manager import RestorePointManager

__version__ = "0.1.0"

__all__ = [
    # Main class
    "ConfigGuard",
    # Enums
    "TargetKind",
    "Criticality",
    "ChangeState",
    "SessionMode",
    "SessionStatus",
    # Data models
    "Target",
    "BackupRecord",
    "Change",
    "Session",
    "RestorePoint",
    "ChangeOutcome",
    "SessionReport",
    "RestoreReport",
    "AuditEntry",
    # Components
    "BackupStore",
    "RestorePointManager",
    "LockManager",
    "LockHandle",
    "AuditLog",
    # Adapters
    "TargetAdapter",
    "FileAdapter",
    "ServiceAdapter",
    "RulesetAdapter",
    "AdapterRegistry",
    # Meta
    "__version__",
]
