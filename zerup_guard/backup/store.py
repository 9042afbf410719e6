"""
Backup Store
~~~~~~~~~~~~

Timestamped, checksummed snapshot storage for configuration targets.

On-disk layout under the store root::

    <YYYYmmdd_HHMMSS>_<sessionId>/
        session               # ID / STARTED_AT / MODE / STATUS
        <targetId>.bak        # snapshot bytes
        <targetId>.meta       # TARGET_ID / CREATED_AT / CHECKSUM / ...

A record becomes visible only once its ``.meta`` file has been renamed
into place, and that happens after the ``.bak`` file is complete, so a
reader never observes a half-written snapshot.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import re
import shutil
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from zerup_guard.adapters.registry import AdapterRegistry
from zerup_guard.backup import keyvalue
from zerup_guard.backup.atomic import TEMP_PREFIX, atomic_write_bytes
from zerup_guard.core.models import BackupRecord, Session, Target
from zerup_guard.core.states import SessionStatus
from zerup_guard.exceptions import (
    BackupFailure,
    ChangeError,
    InsufficientSpace,
    MetadataError,
    RestoreFailure,
    SessionError,
    TargetNotFound,
)

__all__ = ["BackupStore"]

logger = logging.getLogger(__name__)

SESSION_FILE = "session"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class BackupStore:
    """
    Manages capture and restoration of target snapshots.

    Args:
        root: Directory holding one bucket per session (or restore point).
        adapters: Registry used to read and load non-file targets.
        min_free_bytes: Free space that must remain after a snapshot.
        dir_mode: Permission bits for created directories.
    """

    def __init__(
        self,
        root: str,
        adapters: AdapterRegistry | None = None,
        min_free_bytes: int = 0,
        dir_mode: int = 0o700,
    ) -> None:
        self._root = root
        self._adapters = adapters or AdapterRegistry()
        self._min_free_bytes = min_free_bytes
        self._dir_mode = dir_mode

    @property
    def root(self) -> str:
        return self._root

    def bucket_path(self, bucket: str) -> str:
        return os.path.join(self._root, bucket)

    def _ensure_dir(self, path: str) -> None:
        os.makedirs(path, mode=self._dir_mode, exist_ok=True)
        os.chmod(path, self._dir_mode)

    # ── Capture ────────────────────────────────────────────────────

    def backup(self, target: Target, bucket: str) -> BackupRecord:
        """
        Snapshot the target's current persisted state into ``bucket``.

        Returns:
            The immutable record of the snapshot.

        Raises:
            TargetNotFound: If a required target does not exist.
            InsufficientSpace: If the store cannot hold the snapshot.
            BackupFailure: If the target is unreadable or the store unwritable.
        """
        data, existed = self._read_current(target)

        try:
            self._ensure_dir(self._root)
            self._check_space(target, len(data))
            bucket_dir = self.bucket_path(bucket)
            self._ensure_dir(bucket_dir)
        except OSError as exc:
            raise BackupFailure(
                f"Backup store {self._root} is not writable: {exc}",
                target_id=target.id,
            ) from exc

        stem = self._unique_stem(bucket_dir, target.id)
        bak_path = os.path.join(bucket_dir, f"{stem}.bak")
        meta_path = os.path.join(bucket_dir, f"{stem}.meta")
        record = BackupRecord(
            id=f"{bucket}/{stem}",
            target_id=target.id,
            created_at=datetime.now(UTC),
            content_ref=bak_path,
            checksum=_checksum(data),
            kind=target.kind,
            locator=target.locator,
            criticality=target.criticality,
            existed=existed,
            metadata=dict(target.metadata),
        )
        meta = keyvalue.BackupMetadata(
            target_id=record.target_id,
            created_at=record.created_at,
            checksum=record.checksum,
            kind=record.kind,
            locator=record.locator,
            criticality=record.criticality,
            existed=record.existed,
            metadata=record.metadata,
        )

        try:
            atomic_write_bytes(bak_path, data, mode=0o600)
            keyvalue.write_file(meta_path, meta)
        except OSError as exc:
            self._discard(bak_path)
            if exc.errno == errno.ENOSPC:
                raise InsufficientSpace(
                    f"No space left writing backup of {target.id}",
                    target_id=target.id,
                ) from exc
            raise BackupFailure(
                f"Failed to write backup of {target.id}: {exc}",
                target_id=target.id,
            ) from exc

        logger.debug("Backed up %s to %s", target.id, bak_path)
        return record

    def _read_current(self, target: Target) -> tuple[bytes, bool]:
        if target.kind.restores_directly():
            try:
                with open(target.locator, "rb") as f:
                    return f.read(), True
            except FileNotFoundError as exc:
                if not target.must_exist:
                    return b"", False
                raise TargetNotFound(
                    f"Target file not found: {target.locator}",
                    target_id=target.id,
                ) from exc
            except OSError as exc:
                raise BackupFailure(
                    f"Cannot read {target.locator}: {exc}", target_id=target.id
                ) from exc

        try:
            return self._adapters.get(target).read(target), True
        except ChangeError:
            raise
        except Exception as exc:
            raise BackupFailure(
                f"Adapter could not read {target.id}: {exc}", target_id=target.id
            ) from exc

    def _check_space(self, target: Target, size: int) -> None:
        if self._min_free_bytes <= 0:
            return
        free = shutil.disk_usage(self._root).free
        if free < size + self._min_free_bytes:
            raise InsufficientSpace(
                f"Only {free} bytes free in {self._root}; "
                f"need {size + self._min_free_bytes}",
                target_id=target.id,
                details={"free": free, "required": size + self._min_free_bytes},
            )

    @staticmethod
    def _unique_stem(bucket_dir: str, target_id: str) -> str:
        base = _UNSAFE_CHARS.sub("_", target_id) or "target"
        stem, n = base, 1
        while os.path.exists(os.path.join(bucket_dir, f"{stem}.meta")) or os.path.exists(
            os.path.join(bucket_dir, f"{stem}.bak")
        ):
            n += 1
            stem = f"{base}.{n}"
        return stem

    @staticmethod
    def _discard(path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove partial backup %s: %s", path, exc)

    # ── Lookup ─────────────────────────────────────────────────────

    def load_record(self, record_id: str) -> BackupRecord:
        """
        Load a record by id.

        Raises:
            RestoreFailure: If the record is missing or its metadata corrupt.
        """
        bucket, _, stem = record_id.partition("/")
        if not bucket or not stem:
            raise RestoreFailure(f"Malformed backup record id: {record_id!r}")
        bucket_dir = self.bucket_path(bucket)
        meta_path = os.path.join(bucket_dir, f"{stem}.meta")
        if not os.path.exists(meta_path):
            raise RestoreFailure(f"Backup record not found: {record_id}")
        try:
            meta = keyvalue.read_file(meta_path, keyvalue.BackupMetadata)
        except MetadataError as exc:
            raise RestoreFailure(
                f"Backup record {record_id} has corrupt metadata: {exc}",
            ) from exc
        return BackupRecord(
            id=record_id,
            target_id=meta.target_id,
            created_at=meta.created_at,
            content_ref=os.path.join(bucket_dir, f"{stem}.bak"),
            checksum=meta.checksum,
            kind=meta.kind,
            locator=meta.locator,
            criticality=meta.criticality,
            existed=meta.existed,
            metadata=meta.metadata,
        )

    def records(self, bucket: str) -> list[BackupRecord]:
        """Return every complete record in a bucket, oldest first."""
        bucket_dir = self.bucket_path(bucket)
        if not os.path.isdir(bucket_dir):
            return []
        found: list[BackupRecord] = []
        for name in os.listdir(bucket_dir):
            if not name.endswith(".meta"):
                continue
            try:
                found.append(self.load_record(f"{bucket}/{name[: -len('.meta')]}"))
            except RestoreFailure as exc:
                logger.warning("Skipping unreadable backup record: %s", exc)
        return sorted(found, key=lambda r: r.created_at)

    def read_snapshot(self, record: BackupRecord) -> bytes:
        """
        Return a record's bytes after verifying its checksum.

        Raises:
            RestoreFailure: If the snapshot is missing or corrupted.
        """
        try:
            with open(record.content_ref, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise RestoreFailure(
                f"Backup {record.id} is missing: {exc}", target_id=record.target_id
            ) from exc
        if _checksum(data) != record.checksum:
            raise RestoreFailure(
                f"Backup {record.id} failed checksum verification",
                target_id=record.target_id,
                details={"expected": record.checksum, "actual": _checksum(data)},
            )
        return data

    # ── Restore ────────────────────────────────────────────────────

    def restore(self, record: BackupRecord, target: Target | None = None) -> None:
        """
        Write a snapshot back to its target.

        File targets are overwritten directly (or removed, for absent
        snapshots); other kinds are loaded through their adapter.

        Raises:
            RestoreFailure: If the backup is missing, corrupted, or cannot
                be written back.
        """
        target = target or record.to_target()
        data = self.read_snapshot(record)

        if target.kind.restores_directly():
            try:
                if not record.existed:
                    if os.path.exists(target.locator):
                        os.unlink(target.locator)
                else:
                    parent = os.path.dirname(target.locator)
                    if parent:
                        os.makedirs(parent, exist_ok=True)
                    atomic_write_bytes(target.locator, data)
            except OSError as exc:
                raise RestoreFailure(
                    f"Cannot restore {target.locator}: {exc}", target_id=target.id
                ) from exc
        else:
            try:
                self._adapters.get(target).write(target, data)
            except Exception as exc:
                raise RestoreFailure(
                    f"Adapter could not load backup into {target.id}: {exc}",
                    target_id=target.id,
                ) from exc

        logger.info("Restored %s from %s", target.id, record.id)

    # ── Session state ──────────────────────────────────────────────

    def write_session_state(self, session: Session) -> None:
        """Persist a session's status next to its backups."""
        bucket_dir = self.bucket_path(session.bucket)
        self._ensure_dir(self._root)
        self._ensure_dir(bucket_dir)
        keyvalue.write_file(
            os.path.join(bucket_dir, SESSION_FILE),
            keyvalue.SessionMetadata(
                id=session.id,
                started_at=session.started_at,
                mode=session.mode,
                status=session.status,
            ),
        )

    def session_status(self, bucket: str) -> SessionStatus | None:
        """Return the recorded status of a bucket, or None if unknown."""
        path = os.path.join(self.bucket_path(bucket), SESSION_FILE)
        if not os.path.exists(path):
            return None
        try:
            return keyvalue.read_file(path, keyvalue.SessionMetadata).status
        except MetadataError as exc:
            logger.warning("Unreadable session state in %s: %s", bucket, exc)
            return None

    def buckets(self) -> list[str]:
        """Return every bucket under the root, oldest first."""
        if not os.path.isdir(self._root):
            return []
        return sorted(
            name
            for name in os.listdir(self._root)
            if os.path.isdir(self.bucket_path(name))
        )

    # ── Retention ──────────────────────────────────────────────────

    def _is_referenced(self, bucket: str, protected: Iterable[str]) -> bool:
        if bucket in protected:
            return True
        status = self.session_status(bucket)
        return status is None or not status.is_settled()

    def cleanup(
        self,
        retention_days: int,
        protected: Iterable[str] = (),
        now: datetime | None = None,
    ) -> int:
        """
        Delete records older than ``retention_days``.

        Buckets whose session is not committed or rolled back, buckets
        without a readable session state, and buckets listed in
        ``protected`` are never touched, whatever their age.

        Returns:
            The number of records deleted.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
        protected = set(protected)
        deleted = 0

        for bucket in self.buckets():
            if self._is_referenced(bucket, protected):
                logger.debug("Keeping referenced backup bucket %s", bucket)
                continue

            bucket_dir = self.bucket_path(bucket)
            for record in self.records(bucket):
                if record.created_at >= cutoff:
                    continue
                self._discard(record.content_ref)
                self._discard(record.content_ref[: -len(".bak")] + ".meta")
                deleted += 1

            for name in os.listdir(bucket_dir):
                if name.startswith(TEMP_PREFIX):
                    self._discard(os.path.join(bucket_dir, name))

            if not any(n.endswith(".meta") for n in os.listdir(bucket_dir)):
                shutil.rmtree(bucket_dir, ignore_errors=True)
                logger.info("Removed expired backup bucket %s", bucket)

        return deleted

    def purge(self, session_id: str) -> int:
        """
        Delete every record of one session.

        Raises:
            SessionError: If the session's backups are still referenced.

        Returns:
            The number of records deleted.
        """
        matches = [
            b for b in self.buckets() if b == session_id or b.endswith(f"_{session_id}")
        ]
        deleted = 0
        for bucket in matches:
            if self._is_referenced(bucket, ()):
                raise SessionError(
                    f"Session {session_id} is not settled; its backups are still referenced"
                )
            deleted += len(self.records(bucket))
            shutil.rmtree(self.bucket_path(bucket), ignore_errors=True)
            logger.info("Purged backup bucket %s", bucket)
        return deleted
