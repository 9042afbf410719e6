"""
ConfigGuard — Transactional Mutation Engine
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Drives every configuration Change through
backup → apply → validate → commit, rolls back on failure according to
the target's criticality, and rolls whole sessions back in reverse
application order.

Typical use from a hardening module::

    guard = ConfigGuard.from_config("/etc/zerup/guard.yaml")
    with guard.session(SessionMode.NON_INTERACTIVE) as session:
        guard.propose(session, sshd_target, new_sshd_config)
        report = guard.run(session)
    sys.exit(report.exit_code)
"""

from __future__ import annotations

import difflib
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime

from zerup_guard.adapters.base import TargetAdapter
from zerup_guard.adapters.file_adapter import FileAdapter
from zerup_guard.adapters.registry import AdapterRegistry
from zerup_guard.adapters.ruleset_adapter import RulesetAdapter
from zerup_guard.adapters.service_adapter import ServiceAdapter
from zerup_guard.backup.atomic import atomic_write_bytes
from zerup_guard.backup.store import BackupStore
from zerup_guard.config.loader import load_config
from zerup_guard.config.schema import GuardConfig
from zerup_guard.core.hooks import HookRunner
from zerup_guard.core.models import (
    AuditEntry,
    Change,
    ChangeOutcome,
    Session,
    SessionReport,
    Target,
)
from zerup_guard.core.states import (
    ChangeState,
    SessionMode,
    SessionStatus,
    TargetKind,
)
from zerup_guard.exceptions import (
    AdapterNotFoundError,
    ApplyFailure,
    BackupFailure,
    ChangeError,
    IllegalTransitionError,
    RestoreFailure,
    SessionAbortedError,
    SessionClosedError,
    ServiceRestartFailure,
)
from zerup_guard.locking.lock_manager import LockManager
from zerup_guard.observability.audit_log import AuditLog
from zerup_guard.observability.exporters.jsonl_exporter import JsonlExporter
from zerup_guard.restore_points.manager import RestorePointManager

__all__ = ["ConfigGuard", "ConfirmCallback"]

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[Change], bool]


class ConfigGuard:
    """
    Main engine: entry point for sessions, Changes and recovery.

    Args:
        config: Validated configuration; defaults when omitted.
        adapters: Adapter registry; the reference file, service and
            ruleset adapters are registered when omitted.
        confirm: Callback asked before each Change is applied in
            interactive sessions. Returns True to proceed.
    """

    def __init__(
        self,
        config: GuardConfig | None = None,
        adapters: AdapterRegistry | None = None,
        confirm: ConfirmCallback | None = None,
    ) -> None:
        self._config = config or GuardConfig()
        self._adapters = adapters or self._default_adapters()
        self._confirm = confirm

        # ── Subsystems ────────────────────────────────────────────
        paths = self._config.paths
        self._store = BackupStore(
            paths.backup_root,
            adapters=self._adapters,
            min_free_bytes=self._config.backup.min_free_bytes,
            dir_mode=self._config.backup.dir_mode,
        )
        self._hooks = HookRunner(self._config.validation)
        self._lock_manager = LockManager(
            paths.runtime_dir,
            stale_after_seconds=self._config.lock.stale_after_seconds,
            poll_interval_seconds=self._config.lock.poll_interval_seconds,
        )
        self._restore_points = RestorePointManager(
            paths.restore_point_root,
            adapters=self._adapters,
            restore_order=self._config.restore_points.restore_order,
            safety_snapshot=self._config.restore_points.safety_snapshot,
            min_free_bytes=self._config.backup.min_free_bytes,
            dir_mode=self._config.backup.dir_mode,
        )
        self._audit_log = AuditLog()
        if paths.audit_journal:
            self._audit_log.add_exporter(JsonlExporter(path=paths.audit_journal))

    @staticmethod
    def _default_adapters() -> AdapterRegistry:
        registry = AdapterRegistry()
        registry.register(RulesetAdapter())
        registry.register(ServiceAdapter())
        registry.register(FileAdapter())
        return registry

    # ── Construction ───────────────────────────────────────────────

    @classmethod
    def default(cls, **kwargs) -> ConfigGuard:
        """Create an engine with the built-in defaults."""
        return cls(**kwargs)

    @classmethod
    def from_config(cls, path: str, **kwargs) -> ConfigGuard:
        """Create an engine from a YAML configuration file."""
        return cls(config=load_config(path), **kwargs)

    # ── Properties ─────────────────────────────────────────────────

    @property
    def config(self) -> GuardConfig:
        return self._config

    @property
    def adapters(self) -> AdapterRegistry:
        return self._adapters

    @property
    def store(self) -> BackupStore:
        return self._store

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def lock_manager(self) -> LockManager:
        return self._lock_manager

    @property
    def restore_points(self) -> RestorePointManager:
        return self._restore_points

    def set_confirm(self, callback: ConfirmCallback | None) -> None:
        """Replace the interactive confirmation callback."""
        self._confirm = callback

    def register_adapter(self, adapter: TargetAdapter, target_id: str | None = None) -> None:
        """Register an adapter by kind, or for a single target id."""
        if target_id is None:
            self._adapters.register(adapter)
        else:
            self._adapters.register_for_target(target_id, adapter)

    # ── Session lifecycle ──────────────────────────────────────────

    def open_session(self, mode: SessionMode | None = None) -> Session:
        """
        Start a new session. The mode is fixed for its lifetime.

        Dry-run sessions get a private scratch directory and never
        write under the real backup root.
        """
        session = Session(mode=SessionMode(mode or self._config.session.mode))
        if session.is_dry_run:
            session.scratch_dir = tempfile.mkdtemp(prefix="zerup-dry-run-")
        else:
            self._store.write_session_state(session)
        logger.info("Opened %s session %s", session.mode.value, session.id)
        return session

    @contextmanager
    def session(
        self,
        mode: SessionMode | None = None,
        scope: str | None = None,
        timeout: float | None = None,
    ) -> Iterator[Session]:
        """
        Hold the host lock for the duration of one session.

        On exit, a session whose status is still ``open`` is rolled
        back before the lock is released, whether the block finished
        normally or raised.

        Raises:
            LockTimeout: If another run holds the host lock.
        """
        handle = self._lock_manager.acquire(
            scope or self._config.lock.scope,
            self._config.lock.timeout_seconds if timeout is None else timeout,
        )
        try:
            session = self.open_session(mode)
            session.lock = handle
            try:
                yield session
            finally:
                if session.is_open:
                    logger.warning(
                        "Session %s still open at exit; rolling back", session.id
                    )
                    self.rollback_session(session)
                self._discard_scratch(session)
        finally:
            self._lock_manager.release(handle)

    def propose(self, session: Session, target: Target, value: bytes | str) -> Change:
        """
        Record a proposed mutation as a ``pending`` Change.

        Raises:
            SessionClosedError: If the session is not open.
            SessionAbortedError: If an abort was requested.
        """
        self._check_runnable(session)
        if isinstance(value, str):
            value = value.encode("utf-8")
        change = Change(target=target, proposed_value=value, session_id=session.id)
        session.changes.append(change)
        logger.debug("Proposed change %s on %s", change.id, target.id)
        return change

    def close(self, session: Session) -> SessionStatus:
        """
        Settle a session that finished running.

        The session is ``committed`` when every Change is committed,
        ignoring declined Changes and rolled-back advisory Changes;
        otherwise it is ``failed`` and its backups stay referenced.
        In dry runs ``validated`` counts as success.
        """
        if not session.is_open:
            return session.status

        done = {ChangeState.COMMITTED}
        if session.is_dry_run:
            done.add(ChangeState.VALIDATED)

        blocking = [
            c
            for c in session.changes
            if not (
                c.state in done
                or c.declined
                or (c.state is ChangeState.ROLLED_BACK and not c.target.is_critical)
            )
        ]
        status = SessionStatus.FAILED if blocking else SessionStatus.COMMITTED
        self._settle(session, status)
        if blocking:
            logger.error(
                "Session %s failed: %d change(s) did not commit",
                session.id,
                len(blocking),
            )
        else:
            logger.info("Session %s committed", session.id)
        return status

    def _settle(self, session: Session, status: SessionStatus) -> None:
        session.status = status
        if session.is_dry_run:
            self._discard_scratch(session)
        else:
            self._store.write_session_state(session)

    @staticmethod
    def _discard_scratch(session: Session) -> None:
        if session.scratch_dir and os.path.isdir(session.scratch_dir):
            shutil.rmtree(session.scratch_dir, ignore_errors=True)

    # ── Drivers ────────────────────────────────────────────────────

    def run(
        self,
        session: Session,
        abort_event: threading.Event | None = None,
    ) -> SessionReport:
        """
        Process every pending Change in proposal order, then close.

        The abort signal is checked between Changes only; a Change that
        has started is allowed to finish or fail first.
        """
        report = SessionReport(session_id=session.id, status=session.status)

        for change in list(session.changes):
            if change.state is not ChangeState.PENDING or change.declined:
                continue
            if session.abort_event.is_set() or (abort_event and abort_event.is_set()):
                logger.warning("Abort requested; rolling back session %s", session.id)
                report.aborted = True
                self.rollback_session(session)
                break

            outcome = self.process(session, change)
            report.outcomes.append(outcome)
            if outcome.error is not None and not outcome.session_aborted:
                report.warnings.append(
                    f"{change.target.id}: rolled back after {type(outcome.error).__name__}"
                )
            if outcome.session_aborted:
                break

        if session.is_open:
            self.close(session)
        report.status = session.status
        return report

    def process(self, session: Session, change: Change) -> ChangeOutcome:
        """
        Drive one Change from confirmation to commit and apply the
        failure policy.

        A failure on a critical target rolls back the whole session; a
        failure on an advisory target only undoes that Change.
        """
        if not self.confirm(session, change):
            change.declined = True
            logger.info("Change on %s declined; skipping", change.target.id)
            return ChangeOutcome(change=change, success=False)

        try:
            self.stage(session, change)
            self.apply(session, change)
            self.validate(session, change)
            if not session.is_dry_run:
                self.commit(session, change)
        except ChangeError as exc:
            if change.target.is_critical:
                logger.error(
                    "Critical change on %s failed; rolling back session %s: %s",
                    change.target.id,
                    session.id,
                    exc.args[0] if exc.args else exc,
                )
                self.rollback_session(session)
                return ChangeOutcome(
                    change=change, success=False, error=exc, session_aborted=True
                )
            logger.warning(
                "Advisory change on %s rolled back: %s",
                change.target.id,
                exc.args[0] if exc.args else exc,
            )
            return ChangeOutcome(change=change, success=False, error=exc)

        return ChangeOutcome(change=change, success=True)

    def confirm(self, session: Session, change: Change) -> bool:
        """Decide whether a Change may proceed in this session's mode."""
        if session.mode is SessionMode.DRY_RUN:
            return True
        if session.mode is SessionMode.NON_INTERACTIVE:
            return self._config.session.non_interactive_default
        if self._confirm is None:
            logger.warning(
                "No confirmation callback configured; declining change on %s",
                change.target.id,
            )
            return False
        return bool(self._confirm(change))

    # ── Steps ──────────────────────────────────────────────────────

    def stage(self, session: Session, change: Change) -> None:
        """
        Back up the target; ``pending`` → ``backed_up``.

        Raises:
            BackupFailure: After the Change was marked failed and
                resolved to rolled_back. Nothing was written.
        """
        self._check_runnable(session)
        self._expect(change, ChangeState.PENDING, "stage")

        store = self._store_for(session)
        try:
            record = store.backup(change.target, session.bucket)
        except BackupFailure as exc:
            self._fail(session, change, exc)
            raise

        change.backup_record_id = record.id
        if session.is_dry_run:
            change.diff = self._diff(change, store.read_snapshot(record))
        self._transition(session, change, ChangeState.BACKED_UP)

    def apply(self, session: Session, change: Change) -> None:
        """
        Write the proposed value; ``backed_up`` → ``applied``.

        In dry runs the value goes to a scratch copy only.

        Raises:
            ApplyFailure: After the target was restored from its backup.
        """
        self._require_open(session)
        self._expect(change, ChangeState.BACKED_UP, "apply")
        if change.backup_record_id is None:
            raise IllegalTransitionError(
                f"Change {change.id} has no backup record and cannot be applied"
            )

        try:
            if session.is_dry_run:
                atomic_write_bytes(self._scratch_path(session, change), change.proposed_value)
            else:
                self._adapters.get(change.target).write(change.target, change.proposed_value)
        except ApplyFailure as exc:
            self._fail(session, change, exc)
            raise
        except Exception as exc:
            # The target may be half-written; _fail restores it from backup.
            error = ApplyFailure(
                f"Writing {change.target.id} failed: {exc}", target_id=change.target.id
            )
            self._fail(session, change, error)
            raise error from exc

        change.applied_at = datetime.now(UTC)
        self._transition(session, change, ChangeState.APPLIED)

    def validate(self, session: Session, change: Change) -> None:
        """
        Run the target's validation hook; ``applied`` → ``validated``.

        Raises:
            ValidationFailure: After the target was restored from its
                backup. No reload is ever attempted for such a Change.
        """
        self._require_open(session)
        self._expect(change, ChangeState.APPLIED, "validate")

        try:
            adapter = self._adapters.get(change.target)
            if not session.is_dry_run:
                self._hooks.validate(adapter, change.target)
            elif adapter.supports_scratch:
                scratch = replace(change.target, locator=self._scratch_path(session, change))
                self._hooks.validate(adapter, scratch)
            else:
                logger.info(
                    "Dry run: %s cannot validate a scratch copy of %s; skipped",
                    type(adapter).__name__,
                    change.target.id,
                )
        except ChangeError as exc:
            self._fail(session, change, exc)
            raise
        except AdapterNotFoundError as exc:
            error = ApplyFailure(str(exc), target_id=change.target.id)
            self._fail(session, change, error)
            raise error from exc

        self._transition(session, change, ChangeState.VALIDATED)

    def commit(self, session: Session, change: Change) -> None:
        """
        Make a validated Change permanent; ``validated`` → ``committed``.

        Service targets are reloaded and health-checked here; if either
        fails the Change is rolled back (and the service reloaded with
        its previous configuration).

        Raises:
            IllegalTransitionError: Unless the Change is ``validated``.
            ServiceRestartFailure: After rollback, if the reload failed.
            HealthCheckFailure: After rollback, if the probe failed.
        """
        self._require_open(session)
        self._expect(change, ChangeState.VALIDATED, "commit")
        if session.is_dry_run:
            logger.info("Dry run: would commit change on %s", change.target.id)
            return

        if change.target.kind is TargetKind.SERVICE:
            try:
                adapter = self._adapters.get(change.target)
                change.reloaded = True
                self._hooks.reload(adapter, change.target)
                self._hooks.health_check(adapter, change.target)
            except ChangeError as exc:
                self._fail(session, change, exc)
                raise
            except AdapterNotFoundError as exc:
                change.reloaded = False
                error = ServiceRestartFailure(str(exc), target_id=change.target.id)
                self._fail(session, change, error)
                raise error from exc

        self._transition(session, change, ChangeState.COMMITTED)
        logger.info("Committed change on %s", change.target.id)

    # ── Rollback ───────────────────────────────────────────────────

    def rollback(self, session: Session, change: Change) -> None:
        """
        Restore the target from its backup and mark ``rolled_back``.

        Idempotent: an already rolled-back Change is left alone, and a
        ``pending`` Change has nothing to undo.

        Raises:
            RestoreFailure: If the backup could not be written back. The
                Change stays ``failed`` in that case.
        """
        if change.state in (ChangeState.ROLLED_BACK, ChangeState.PENDING):
            return
        if change.state not in (ChangeState.FAILED, ChangeState.COMMITTED):
            self._transition(session, change, ChangeState.FAILED)

        if change.backup_record_id is not None and not session.is_dry_run:
            try:
                record = self._store.load_record(change.backup_record_id)
                self._store.restore(record, change.target)
            except RestoreFailure as exc:
                logger.error("Rollback of %s failed: %s", change.target.id, exc)
                raise
            if change.reloaded:
                self._reload_after_restore(change)

        self._transition(session, change, ChangeState.ROLLED_BACK)
        logger.debug("Rolled back change on %s", change.target.id)

    def _reload_after_restore(self, change: Change) -> None:
        try:
            self._hooks.reload(self._adapters.get(change.target), change.target)
        except ChangeError as exc:
            logger.error(
                "Restored %s but could not reload it: %s", change.target.id, exc.args[0]
            )

    def rollback_session(self, session: Session) -> list[RestoreFailure]:
        """
        Roll back every Change not ``pending`` or ``rolled_back``, in
        strict reverse application order.

        Returns:
            Restore failures. When any occurred the session is marked
            ``failed`` instead of ``rolled_back`` so its backups stay
            referenced for manual recovery.
        """
        if session.status is SessionStatus.ROLLED_BACK:
            return []

        applied = list(reversed(session.applied_changes()))
        unapplied = [c for c in session.changes if c.applied_at is None]
        failures: list[RestoreFailure] = []

        for change in applied + unapplied:
            try:
                self.rollback(session, change)
            except RestoreFailure as exc:
                failures.append(exc)

        status = SessionStatus.FAILED if failures else SessionStatus.ROLLED_BACK
        self._settle(session, status)
        if failures:
            logger.error(
                "Session %s rollback incomplete: %d target(s) could not be restored",
                session.id,
                len(failures),
            )
        else:
            logger.info("Session %s rolled back", session.id)
        return failures

    # ── Retention ──────────────────────────────────────────────────

    def cleanup(self, retention_days: int | None = None) -> int:
        """Expire settled session backups. Returns the count deleted."""
        days = self._config.backup.retention_days if retention_days is None else retention_days
        deleted = self._store.cleanup(days)
        logger.info("Removed %d backup record(s) older than %d day(s)", deleted, days)
        return deleted

    # ── Internal ───────────────────────────────────────────────────

    def _require_open(self, session: Session) -> None:
        if not session.is_open:
            raise SessionClosedError(
                f"Session {session.id} is {session.status.value}, not open"
            )

    def _check_runnable(self, session: Session) -> None:
        self._require_open(session)
        if session.abort_event.is_set():
            raise SessionAbortedError(f"Session {session.id} is being aborted")

    @staticmethod
    def _expect(change: Change, state: ChangeState, step: str) -> None:
        if change.state is not state:
            raise IllegalTransitionError(
                f"Cannot {step} change {change.id} on {change.target.id}: "
                f"it is {change.state.value}, expected {state.value}"
            )

    def _store_for(self, session: Session) -> BackupStore:
        if session.is_dry_run:
            return BackupStore(
                os.path.join(session.scratch_dir or tempfile.gettempdir(), "backups"),
                adapters=self._adapters,
            )
        return self._store

    @staticmethod
    def _scratch_path(session: Session, change: Change) -> str:
        name = os.path.basename(change.target.locator) or change.target.id
        directory = os.path.join(session.scratch_dir or tempfile.gettempdir(), "targets")
        os.makedirs(directory, exist_ok=True)
        return os.path.join(directory, f"{change.id[:8]}-{name}")

    @staticmethod
    def _diff(change: Change, current: bytes) -> str:
        before = current.decode("utf-8", "replace").splitlines(keepends=True)
        after = change.proposed_value.decode("utf-8", "replace").splitlines(keepends=True)
        return "".join(
            difflib.unified_diff(
                before,
                after,
                fromfile=change.target.locator,
                tofile=f"{change.target.locator} (proposed)",
            )
        )

    def _fail(self, session: Session, change: Change, error: ChangeError) -> None:
        """Mark a Change failed and restore its target from backup."""
        change.error = error.args[0] if error.args else str(error)
        self._transition(session, change, ChangeState.FAILED, error=change.error)
        try:
            self.rollback(session, change)
        except RestoreFailure as exc:
            logger.error(
                "Target %s could not be restored after %s: %s",
                change.target.id,
                type(error).__name__,
                exc,
            )

    def _transition(
        self,
        session: Session,
        change: Change,
        new: ChangeState,
        error: str | None = None,
    ) -> None:
        previous = change.transition(new)
        self._audit_log.write(
            AuditEntry(
                change_id=change.id,
                session_id=session.id,
                target_id=change.target.id,
                from_state=previous,
                to_state=new,
                criticality=change.target.criticality,
                backup_record_id=change.backup_record_id,
                dry_run=session.is_dry_run,
                error=error,
            )
        )
        logger.debug(
            "Change %s on %s: %s -> %s",
            change.id,
            change.target.id,
            previous.value,
            new.value,
        )
