"""zerup-guard core: data models, state machines, and the mutation engine."""

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

__all__ = [
    "TargetKind",
    "Criticality",
    "ChangeState",
    "SessionMode",
    "SessionStatus",
    "Target",
    "BackupRecord",
    "Change",
    "Session",
    "RestorePoint",
    "ChangeOutcome",
    "SessionReport",
    "RestoreReport",
    "AuditEntry",
]
