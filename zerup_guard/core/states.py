"""
zerup-guard State & Classification Enums
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Core enums that classify targets and drive the Change and Session
state machines.
"""

from enum import StrEnum

__all__ = [
    "TargetKind",
    "Criticality",
    "ChangeState",
    "SessionMode",
    "SessionStatus",
]


class TargetKind(StrEnum):
    """
    Resource type of a configuration target.

    - FILE: A plain configuration file, restored by direct overwrite.
    - SERVICE: A service whose state is loaded through its adapter and
      which is reloaded and health-checked on commit.
    - RULESET: A rule set (firewall, jails) dumped and loaded by its adapter.
    """

    FILE = "file"
    SERVICE = "service"
    RULESET = "ruleset"

    def restores_directly(self) -> bool:
        """Return True if the backup store can write this kind back itself."""
        return self is TargetKind.FILE


class Criticality(StrEnum):
    """
    Failure-policy classification of a target.

    A failure on a CRITICAL target aborts the whole session; a failure
    on an ADVISORY target only rolls back that Change.
    """

    CRITICAL = "critical"
    ADVISORY = "advisory"


class ChangeState(StrEnum):
    """
    Lifecycle of a single Change.

    Forward path: PENDING → BACKED_UP → APPLIED → VALIDATED → COMMITTED.
    Any in-flight state may divert to FAILED, which resolves to
    ROLLED_BACK. A COMMITTED Change moves to ROLLED_BACK only when its
    session is rolled back as a unit.
    """

    PENDING = "pending"
    BACKED_UP = "backed_up"
    APPLIED = "applied"
    VALIDATED = "validated"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    def can_transition_to(self, new: "ChangeState") -> bool:
        """Return True if moving from this state to ``new`` is legal."""
        return new in _TRANSITIONS[self]

    def is_terminal(self) -> bool:
        """Return True if no further forward progress is possible."""
        return self in (ChangeState.COMMITTED, ChangeState.ROLLED_BACK)


_TRANSITIONS: dict[ChangeState, frozenset[ChangeState]] = {
    ChangeState.PENDING: frozenset({ChangeState.BACKED_UP, ChangeState.FAILED}),
    ChangeState.BACKED_UP: frozenset({ChangeState.APPLIED, ChangeState.FAILED}),
    ChangeState.APPLIED: frozenset({ChangeState.VALIDATED, ChangeState.FAILED}),
    ChangeState.VALIDATED: frozenset({ChangeState.COMMITTED, ChangeState.FAILED}),
    ChangeState.COMMITTED: frozenset({ChangeState.ROLLED_BACK}),
    ChangeState.FAILED: frozenset({ChangeState.ROLLED_BACK}),
    ChangeState.ROLLED_BACK: frozenset(),
}


class SessionMode(StrEnum):
    """
    Execution mode of a session, fixed for its lifetime.

    - INTERACTIVE: every Change needs an external confirmation.
    - NON_INTERACTIVE: a configured default decision replaces confirmation.
    - DRY_RUN: Changes are exercised against scratch copies only.
    """

    INTERACTIVE = "interactive"
    NON_INTERACTIVE = "non_interactive"
    DRY_RUN = "dry_run"


class SessionStatus(StrEnum):
    """Status of a session."""

    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    def is_settled(self) -> bool:
        """Return True if the session's backups are no longer referenced."""
        return self in (SessionStatus.COMMITTED, SessionStatus.ROLLED_BACK)
