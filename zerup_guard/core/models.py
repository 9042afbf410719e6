"""
zerup-guard Data Models
~~~~~~~~~~~~~~~~~~~~~~~

Defines the core dataclasses that flow through the mutation engine:
Target (input), Change and Session (tracked state), BackupRecord and
RestorePoint (persisted snapshots), and the reports returned to callers.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from zerup_guard.core.states import (
    ChangeState,
    Criticality,
    SessionMode,
    SessionStatus,
    TargetKind,
)
from zerup_guard.exceptions import IllegalTransitionError

__all__ = [
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


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Target:
    """
    A mutable system resource, owned by the calling hardening module.

    The engine never constructs Targets; it only receives them.

    Attributes:
        id: Stable identifier, e.g. "sshd_config".
        kind: Resource type, selects the adapter.
        locator: Path of the file, or service/rule-set name.
        criticality: Failure policy for Changes on this target.
        must_exist: When False, a missing file is snapshotted as absent
            and restoring that snapshot removes the file.
        metadata: Adapter-specific settings (service unit, probe port, ...).
    """

    id: str
    kind: TargetKind
    locator: str
    criticality: Criticality = Criticality.ADVISORY
    must_exist: bool = True
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_critical(self) -> bool:
        return self.criticality is Criticality.CRITICAL


@dataclass(frozen=True)
class BackupRecord:
    """
    Immutable snapshot of one target, as written to the backup store.

    Attributes:
        id: "<bucket>/<stem>", unique within a store root.
        target_id: The target this snapshot belongs to.
        created_at: When the snapshot was written.
        content_ref: Path of the stored ``.bak`` file.
        checksum: SHA-256 hex digest of the stored bytes.
        kind: Target kind at capture time.
        locator: Target locator at capture time.
        criticality: Target criticality at capture time.
        existed: False when the snapshot records an absent file.
        metadata: Target adapter settings at capture time, so the
            snapshot can be loaded back without the caller's Target.
    """

    id: str
    target_id: str
    created_at: datetime
    content_ref: str
    checksum: str
    kind: TargetKind = TargetKind.FILE
    locator: str = ""
    criticality: Criticality = Criticality.ADVISORY
    existed: bool = True
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def bucket(self) -> str:
        return self.id.split("/", 1)[0]

    def to_target(self) -> Target:
        """Rebuild the Target this record was captured from."""
        return Target(
            id=self.target_id,
            kind=self.kind,
            locator=self.locator,
            criticality=self.criticality,
            must_exist=self.existed,
            metadata=dict(self.metadata),
        )


@dataclass
class Change:
    """
    One proposed mutation of a Target, tracked through its state machine.

    Attributes:
        target: The target being mutated.
        proposed_value: The full new content for the target.
        session_id: The session this Change belongs to.
        id: Unique ID for this Change (auto-generated).
        state: Current lifecycle state.
        backup_record_id: Set by staging; required before APPLIED.
        applied_at: When the adapter write succeeded.
        reloaded: True once a reload was issued on commit.
        declined: True if confirmation was refused; never staged.
        diff: Unified diff of current vs proposed content (dry runs).
        error: Message of the failure that diverted this Change, if any.
        history: (state, timestamp) for every transition taken.
    """

    target: Target
    proposed_value: bytes
    session_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ChangeState = ChangeState.PENDING
    backup_record_id: str | None = None
    applied_at: datetime | None = None
    reloaded: bool = False
    declined: bool = False
    diff: str | None = None
    error: str | None = None
    history: list[tuple[ChangeState, datetime]] = field(default_factory=list)

    def transition(self, new: ChangeState) -> ChangeState:
        """
        Move to ``new``, enforcing the legal-transition table.

        Returns:
            The previous state.

        Raises:
            IllegalTransitionError: If the move is not allowed.
        """
        if not self.state.can_transition_to(new):
            raise IllegalTransitionError(
                f"Change {self.id} on {self.target.id} cannot move "
                f"from {self.state.value} to {new.value}"
            )
        previous = self.state
        self.state = new
        self.history.append((new, _utcnow()))
        return previous


@dataclass
class Session:
    """
    One hardening run: an ordered group of Changes rolled back as a unit.

    Attributes:
        mode: Execution mode, fixed for the session's lifetime.
        id: Unique ID for this session (auto-generated).
        started_at: When the session was opened.
        changes: Changes in proposal order.
        status: Current status.
        lock: The host lock handle held for this session, if any.
        scratch_dir: Working directory for dry-run copies.
    """

    mode: SessionMode
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=_utcnow)
    changes: list[Change] = field(default_factory=list)
    status: SessionStatus = SessionStatus.OPEN
    lock: Any = None
    scratch_dir: str | None = None
    abort_event: threading.Event = field(default_factory=threading.Event)

    @property
    def bucket(self) -> str:
        """Directory name of this session under the backup root."""
        return f"{self.started_at.strftime('%Y%m%d_%H%M%S')}_{self.id}"

    @property
    def is_open(self) -> bool:
        return self.status is SessionStatus.OPEN

    @property
    def is_dry_run(self) -> bool:
        return self.mode is SessionMode.DRY_RUN

    def abort(self) -> None:
        """Request a cooperative abort, honored between Changes."""
        self.abort_event.set()

    def applied_changes(self) -> list[Change]:
        """Changes in the order their writes actually happened."""
        touched = [c for c in self.changes if c.applied_at is not None]
        return sorted(touched, key=lambda c: c.applied_at)  # type: ignore[arg-type, return-value]


@dataclass
class RestorePoint:
    """
    A named, operator-triggered multi-target snapshot set.

    Attributes:
        id: Directory name, "<name>_<YYYYmmdd_HHMMSS>".
        name: Operator-supplied name.
        created_at: When the point was created.
        description: Free-text description.
        backup_record_ids: Record ids in capture order.
        created_by: User that created the point.
        created_from: Host the point was created on.
    """

    id: str
    name: str
    created_at: datetime
    description: str = ""
    backup_record_ids: list[str] = field(default_factory=list)
    created_by: str = ""
    created_from: str = ""


@dataclass
class ChangeOutcome:
    """
    Result of driving one Change through the pipeline.

    Attributes:
        change: The Change after processing.
        success: True if the Change reached its goal state.
        error: The structured error, if the Change failed.
        session_aborted: True if this failure rolled back the session.
    """

    change: Change
    success: bool
    error: Exception | None = None
    session_aborted: bool = False


@dataclass
class SessionReport:
    """Summary returned from running a session to completion."""

    session_id: str
    status: SessionStatus
    outcomes: list[ChangeOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.status is SessionStatus.COMMITTED

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def errors(self) -> list[Exception]:
        return [o.error for o in self.outcomes if o.error is not None]


@dataclass
class RestoreReport:
    """Summary of a best-effort restore of a restore point."""

    restore_point_id: str
    restored: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    safety_point_id: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class AuditEntry:
    """Audit record written for every Change state transition."""

    change_id: str
    session_id: str
    target_id: str
    from_state: ChangeState
    to_state: ChangeState
    criticality: Criticality
    backup_record_id: str | None = None
    dry_run: bool = False
    error: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "change_id": self.change_id,
            "session_id": self.session_id,
            "target_id": self.target_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "criticality": self.criticality.value,
            "backup_record_id": self.backup_record_id,
            "dry_run": self.dry_run,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }
