"""Tests for the backup store."""

import errno
import hashlib
import os
from collections import namedtuple
from datetime import UTC, datetime, timedelta

import pytest

from zerup_guard import BackupStore, Criticality, Session, SessionMode, SessionStatus, Target, TargetKind
from zerup_guard.backup.atomic import TEMP_PREFIX
from zerup_guard.exceptions import (
    BackupFailure,
    InsufficientSpace,
    RestoreFailure,
    SessionError,
    TargetNotFound,
)

BUCKET = "20240101_000000_abc"


@pytest.fixture
def store(tmp_path, registry):
    return BackupStore(str(tmp_path / "store"), adapters=registry)


@pytest.fixture
def conf_file(tmp_path):
    path = tmp_path / "jail.local"
    path.write_bytes(b"[sshd]\nenabled = true\n")
    return path


@pytest.fixture
def conf_target(conf_file):
    return Target(id="jail.local", kind=TargetKind.FILE, locator=str(conf_file))


def _settled_session(store, status=SessionStatus.COMMITTED):
    session = Session(mode=SessionMode.NON_INTERACTIVE)
    store.write_session_state(session)
    session.status = status
    store.write_session_state(session)
    return session


class TestBackup:
    """Tests for capturing snapshots."""

    def test_backup_writes_bak_and_meta(self, store, conf_target, conf_file):
        record = store.backup(conf_target, BUCKET)

        bucket_dir = os.path.join(store.root, BUCKET)
        assert os.path.exists(os.path.join(bucket_dir, "jail.local.bak"))
        assert os.path.exists(os.path.join(bucket_dir, "jail.local.meta"))
        assert record.id == f"{BUCKET}/jail.local"
        assert record.checksum == hashlib.sha256(conf_file.read_bytes()).hexdigest()

    def test_directories_are_private(self, store, conf_target):
        store.backup(conf_target, BUCKET)
        assert (os.stat(store.root).st_mode & 0o777) == 0o700
        assert (os.stat(os.path.join(store.root, BUCKET)).st_mode & 0o777) == 0o700

    def test_meta_round_trips_through_load_record(self, store, conf_target):
        record = store.backup(conf_target, BUCKET)
        loaded = store.load_record(record.id)
        assert loaded.target_id == "jail.local"
        assert loaded.checksum == record.checksum
        assert loaded.kind is TargetKind.FILE
        assert loaded.existed is True

    def test_second_backup_of_same_target_gets_suffix(self, store, conf_target):
        first = store.backup(conf_target, BUCKET)
        second = store.backup(conf_target, BUCKET)
        assert first.id != second.id
        assert second.id.endswith(".2")

    def test_missing_target_raises(self, store, tmp_path):
        target = Target(id="gone", kind=TargetKind.FILE, locator=str(tmp_path / "gone"))
        with pytest.raises(TargetNotFound):
            store.backup(target, BUCKET)

    def test_missing_optional_target_recorded_as_absent(self, store, tmp_path):
        target = Target(
            id="new", kind=TargetKind.FILE, locator=str(tmp_path / "new"), must_exist=False
        )
        record = store.backup(target, BUCKET)
        assert record.existed is False

    def test_ruleset_backup_uses_adapter_dump(self, store, ruleset_adapter):
        target = Target(id="ufw-rules", kind=TargetKind.RULESET, locator="ufw")
        record = store.backup(target, BUCKET)
        assert store.read_snapshot(record) == ruleset_adapter.rules["ufw-rules"]
        assert ("read", "ufw-rules") in ruleset_adapter.calls

    def test_insufficient_space_precheck(self, tmp_path, conf_target, monkeypatch):
        store = BackupStore(str(tmp_path / "store"), min_free_bytes=10_000)
        usage = namedtuple("usage", "total used free")
        monkeypatch.setattr("shutil.disk_usage", lambda path: usage(100, 90, 10))
        with pytest.raises(InsufficientSpace):
            store.backup(conf_target, BUCKET)

    def test_enospc_maps_to_insufficient_space(self, store, conf_target, monkeypatch):
        def full_disk(*args, **kwargs):
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr("zerup_guard.backup.store.atomic_write_bytes", full_disk)
        with pytest.raises(InsufficientSpace):
            store.backup(conf_target, BUCKET)


class TestAtomicity:
    """A partially written backup is never observable."""

    def test_interrupted_meta_write_leaves_no_record(self, store, conf_target, monkeypatch):
        real_replace = os.replace

        def crash_on_meta(src, dst):
            if str(dst).endswith(".meta"):
                raise OSError(errno.EIO, "simulated crash")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", crash_on_meta)
        with pytest.raises(BackupFailure):
            store.backup(conf_target, BUCKET)
        monkeypatch.setattr(os, "replace", real_replace)

        assert store.records(BUCKET) == []
        leftovers = os.listdir(os.path.join(store.root, BUCKET))
        assert not [n for n in leftovers if n.endswith(".bak") or n.startswith(TEMP_PREFIX)]
        with pytest.raises(RestoreFailure):
            store.load_record(f"{BUCKET}/jail.local")

    def test_orphan_bak_without_meta_is_invisible(self, store, conf_target):
        bucket_dir = os.path.join(store.root, BUCKET)
        os.makedirs(bucket_dir)
        with open(os.path.join(bucket_dir, "jail.local.bak"), "wb") as f:
            f.write(b"[sshd]\nena")
        assert store.records(BUCKET) == []


class TestRestore:
    """Tests for writing snapshots back."""

    def test_restore_round_trip_is_byte_identical(self, store, conf_target, conf_file):
        original = conf_file.read_bytes()
        record = store.backup(conf_target, BUCKET)
        conf_file.write_bytes(b"garbage")
        store.restore(record, conf_target)
        assert conf_file.read_bytes() == original

    def test_restore_without_target_uses_record(self, store, conf_target, conf_file):
        original = conf_file.read_bytes()
        record = store.backup(conf_target, BUCKET)
        conf_file.unlink()
        store.restore(store.load_record(record.id))
        assert conf_file.read_bytes() == original

    def test_restore_absent_snapshot_removes_file(self, store, tmp_path):
        path = tmp_path / "jail.d" / "zerup.local"
        target = Target(id="jail", kind=TargetKind.FILE, locator=str(path), must_exist=False)
        record = store.backup(target, BUCKET)
        path.parent.mkdir()
        path.write_text("[sshd]\n")
        store.restore(record, target)
        assert not path.exists()

    def test_checksum_mismatch_raises(self, store, conf_target, conf_file):
        record = store.backup(conf_target, BUCKET)
        with open(record.content_ref, "ab") as f:
            f.write(b"tampered")
        conf_file.write_bytes(b"current")
        with pytest.raises(RestoreFailure):
            store.restore(record, conf_target)
        assert conf_file.read_bytes() == b"current"

    def test_missing_snapshot_raises(self, store, conf_target):
        record = store.backup(conf_target, BUCKET)
        os.unlink(record.content_ref)
        with pytest.raises(RestoreFailure):
            store.restore(record, conf_target)

    def test_ruleset_restore_uses_adapter_load(self, store, ruleset_adapter):
        target = Target(id="ufw-rules", kind=TargetKind.RULESET, locator="ufw")
        original = ruleset_adapter.rules["ufw-rules"]
        record = store.backup(target, BUCKET)
        ruleset_adapter.rules["ufw-rules"] = b"changed"
        store.restore(record, target)
        assert ruleset_adapter.rules["ufw-rules"] == original


class TestRetention:
    """Tests for cleanup and purge."""

    def test_cleanup_removes_old_settled_records(self, store, conf_target):
        session = _settled_session(store)
        store.backup(conf_target, session.bucket)
        later = datetime.now(UTC) + timedelta(days=31)

        assert store.cleanup(30, now=later) == 1
        assert not os.path.exists(store.bucket_path(session.bucket))

    def test_cleanup_keeps_recent_records(self, store, conf_target):
        session = _settled_session(store)
        store.backup(conf_target, session.bucket)
        assert store.cleanup(30) == 0
        assert len(store.records(session.bucket)) == 1

    def test_cleanup_never_touches_open_session(self, store, conf_target):
        session = Session(mode=SessionMode.NON_INTERACTIVE)
        store.write_session_state(session)
        store.backup(conf_target, session.bucket)
        much_later = datetime.now(UTC) + timedelta(days=3650)

        assert store.cleanup(0, now=much_later) == 0
        assert len(store.records(session.bucket)) == 1

    def test_cleanup_keeps_failed_session(self, store, conf_target):
        session = _settled_session(store, SessionStatus.FAILED)
        store.backup(conf_target, session.bucket)
        assert store.cleanup(0, now=datetime.now(UTC) + timedelta(days=90)) == 0

    def test_cleanup_skips_bucket_without_session_state(self, store, conf_target):
        store.backup(conf_target, BUCKET)
        assert store.cleanup(0, now=datetime.now(UTC) + timedelta(days=90)) == 0

    def test_cleanup_honors_protected(self, store, conf_target):
        session = _settled_session(store)
        store.backup(conf_target, session.bucket)
        later = datetime.now(UTC) + timedelta(days=90)
        assert store.cleanup(0, protected=[session.bucket], now=later) == 0

    def test_purge_settled_session(self, store, conf_target):
        session = _settled_session(store, SessionStatus.ROLLED_BACK)
        store.backup(conf_target, session.bucket)
        assert store.purge(session.id) == 1
        assert store.buckets() == []

    def test_purge_open_session_refused(self, store, conf_target):
        session = Session(mode=SessionMode.NON_INTERACTIVE)
        store.write_session_state(session)
        store.backup(conf_target, session.bucket)
        with pytest.raises(SessionError):
            store.purge(session.id)
        assert len(store.records(session.bucket)) == 1

    def test_criticality_is_persisted(self, store, conf_file):
        target = Target(
            id="sshd", kind=TargetKind.FILE, locator=str(conf_file),
            criticality=Criticality.CRITICAL,
        )
        record = store.backup(target, BUCKET)
        assert store.load_record(record.id).criticality is Criticality.CRITICAL
