"""
Restore Point Manager
~~~~~~~~~~~~~~~~~~~~~

Named, operator-triggered snapshot sets over several targets,
independent of any session. Each point is one directory
``<name>_<YYYYmmdd_HHMMSS>/`` under the restore-point root, holding the
snapshots plus a ``metadata`` key=value file that existing shell
listings read (``NAME=``, ``TIMESTAMP=``, ``DESCRIPTION=``,
``CREATED_BY=``).
"""

from __future__ import annotations

import getpass
import logging
import os
import re
import shutil
import socket
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta

from zerup_guard.adapters.registry import AdapterRegistry
from zerup_guard.backup import keyvalue
from zerup_guard.backup.store import BackupStore
from zerup_guard.core.models import BackupRecord, RestorePoint, RestoreReport, Target
from zerup_guard.exceptions import (
    ChangeError,
    MetadataError,
    RestoreFailure,
    RestorePointNotFoundError,
)

__all__ = ["RestorePointManager", "SAFETY_PREFIX"]

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata"
SAFETY_PREFIX = "before-restore-"
_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_UNLISTABLE_CHARS = ('"', "\\")


def _current_user() -> str:
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        return sudo_user
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class RestorePointManager:
    """
    Creates, lists, restores and expires restore points.

    Args:
        root: Directory holding one subdirectory per point.
        adapters: Registry used to capture and load non-file targets.
        restore_order: Target ids restored first, in this order (for
            example the firewall before SSH). Other targets follow in
            capture order.
        safety_snapshot: Snapshot the current state of the same targets
            before restoring, so a restore can itself be undone.
    """

    def __init__(
        self,
        root: str,
        adapters: AdapterRegistry | None = None,
        restore_order: Sequence[str] = (),
        safety_snapshot: bool = True,
        min_free_bytes: int = 0,
        dir_mode: int = 0o700,
    ) -> None:
        self._store = BackupStore(
            root, adapters=adapters, min_free_bytes=min_free_bytes, dir_mode=dir_mode
        )
        self._restore_order = list(restore_order)
        self._safety_snapshot = safety_snapshot

    @property
    def root(self) -> str:
        return self._store.root

    @property
    def store(self) -> BackupStore:
        return self._store

    # ── Create ─────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        description: str = "",
        targets: Sequence[Target] = (),
    ) -> RestorePoint:
        """
        Back up every target under one named point.

        Either every target is captured or the point is not created.

        Raises:
            ValueError: If the name or description contains unsafe characters.
            BackupFailure: If any target cannot be captured.
        """
        if not _NAME_RE.match(name):
            raise ValueError(
                f"Invalid restore point name {name!r}: use letters, digits, '.', '_' or '-'"
            )
        # Shell listings strip quotes without unescaping, so escapes would show.
        if any(ch in description for ch in _UNLISTABLE_CHARS):
            raise ValueError(
                f"Invalid restore point description {description!r}: "
                "double quotes and backslashes are not allowed"
            )

        now = datetime.now(UTC).replace(microsecond=0)
        point_id = self._unique_id(f"{name}_{now:%Y%m%d_%H%M%S}")

        records: list[BackupRecord] = []
        try:
            for target in targets:
                records.append(self._store.backup(target, point_id))
            meta = keyvalue.RestorePointMetadata(
                name=name,
                timestamp=int(now.timestamp()),
                description=description,
                created_by=_current_user(),
                created_from=socket.gethostname(),
                id=point_id,
                records=[r.id for r in records],
            )
            keyvalue.write_file(
                os.path.join(self._store.bucket_path(point_id), METADATA_FILE), meta
            )
        except (ChangeError, MetadataError, OSError):
            shutil.rmtree(self._store.bucket_path(point_id), ignore_errors=True)
            logger.error("Restore point %s not created", point_id)
            raise

        logger.info("Created restore point %s with %d target(s)", point_id, len(records))
        return self._to_point(meta)

    def _unique_id(self, base: str) -> str:
        point_id, n = base, 1
        while os.path.exists(self._store.bucket_path(point_id)):
            n += 1
            point_id = f"{base}_{n}"
        return point_id

    # ── Lookup ─────────────────────────────────────────────────────

    @staticmethod
    def _to_point(meta: keyvalue.RestorePointMetadata) -> RestorePoint:
        return RestorePoint(
            id=meta.id,
            name=meta.name,
            created_at=datetime.fromtimestamp(meta.timestamp, UTC),
            description=meta.description,
            backup_record_ids=list(meta.records),
            created_by=meta.created_by,
            created_from=meta.created_from,
        )

    def _load(self, point_id: str) -> RestorePoint:
        path = os.path.join(self._store.bucket_path(point_id), METADATA_FILE)
        meta = keyvalue.read_file(path, keyvalue.RestorePointMetadata)
        if not meta.id:
            # Points written by the shell tooling carry no ID or RECORDS.
            meta.id = point_id
            meta.records = [r.id for r in self._store.records(point_id)]
        return self._to_point(meta)

    def list(self) -> list[RestorePoint]:
        """Return every readable restore point, newest first."""
        points: list[RestorePoint] = []
        for point_id in self._store.buckets():
            if not os.path.exists(
                os.path.join(self._store.bucket_path(point_id), METADATA_FILE)
            ):
                continue
            try:
                points.append(self._load(point_id))
            except MetadataError as exc:
                logger.warning("Skipping unreadable restore point %s: %s", point_id, exc)
        return sorted(points, key=lambda p: (p.created_at, p.id), reverse=True)

    def get(self, id_or_name: str) -> RestorePoint:
        """
        Find a point by id, or the newest point with that name.

        Raises:
            RestorePointNotFoundError: If nothing matches.
        """
        points = self.list()
        for point in points:
            if point.id == id_or_name:
                return point
        for point in points:
            if point.name == id_or_name:
                return point
        raise RestorePointNotFoundError(f"Restore point not found: {id_or_name}")

    # ── Restore ────────────────────────────────────────────────────

    def _ordered(self, records: list[BackupRecord]) -> list[BackupRecord]:
        rank = {target_id: i for i, target_id in enumerate(self._restore_order)}
        first = sorted(
            (r for r in records if r.target_id in rank), key=lambda r: rank[r.target_id]
        )
        rest = [r for r in records if r.target_id not in rank]
        return first + rest

    def restore(self, id_or_name: str) -> RestoreReport:
        """
        Restore every target of a point, best effort.

        A failing target is reported and the remaining targets are
        still restored.

        Raises:
            RestorePointNotFoundError: If the point does not exist.
        """
        point = self.get(id_or_name)
        report = RestoreReport(restore_point_id=point.id)

        records: list[BackupRecord] = []
        for record_id in point.backup_record_ids:
            try:
                records.append(self._store.load_record(record_id))
            except RestoreFailure as exc:
                logger.warning("Restore point %s: %s", point.id, exc)
                report.failed[record_id] = str(exc)

        if self._safety_snapshot and records:
            report.safety_point_id = self._take_safety_snapshot(point, records)

        for record in self._ordered(records):
            try:
                self._store.restore(record)
            except RestoreFailure as exc:
                logger.warning("Could not restore %s: %s", record.target_id, exc)
                report.failed[record.target_id] = str(exc)
            else:
                report.restored.append(record.target_id)

        if report.ok:
            logger.info("Restored %d target(s) from %s", len(report.restored), point.id)
        else:
            logger.error(
                "Restore of %s finished with %d failure(s)", point.id, len(report.failed)
            )
        return report

    def _take_safety_snapshot(
        self, point: RestorePoint, records: list[BackupRecord]
    ) -> str | None:
        targets = [replace(r.to_target(), must_exist=False) for r in records]
        try:
            safety = self.create(
                f"{SAFETY_PREFIX}{point.name}",
                description=f"Automatic snapshot before restoring {point.id}",
                targets=targets,
            )
        except (ChangeError, MetadataError, OSError, ValueError) as exc:
            logger.warning("Safety snapshot before restoring %s failed: %s", point.id, exc)
            return None
        return safety.id

    # ── Retention ──────────────────────────────────────────────────

    def delete(self, id_or_name: str) -> None:
        """
        Delete a restore point.

        Raises:
            RestorePointNotFoundError: If the point does not exist.
        """
        point = self.get(id_or_name)
        shutil.rmtree(self._store.bucket_path(point.id))
        logger.info("Deleted restore point %s", point.id)

    def cleanup(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete points older than ``retention_days``. Returns the count."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
        deleted = 0
        for point in self.list():
            if point.created_at < cutoff:
                shutil.rmtree(self._store.bucket_path(point.id), ignore_errors=True)
                logger.info("Removed expired restore point %s", point.id)
                deleted += 1
        return deleted
