"""Tests for target adapters and the adapter registry."""

import socket
import sys

import pytest

from zerup_guard import (
    AdapterRegistry,
    FileAdapter,
    RulesetAdapter,
    ServiceAdapter,
    Target,
    TargetKind,
)
from zerup_guard.adapters.base import render_command
from zerup_guard.exceptions import (
    AdapterNotFoundError,
    ApplyFailure,
    BackupFailure,
    ServiceRestartFailure,
    TargetNotFound,
    ValidationFailure,
    ValidationTimeout,
)

PY = sys.executable


def _file_target(path, **metadata) -> Target:
    return Target(id="conf", kind=TargetKind.FILE, locator=str(path), metadata=metadata)


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestAdapterRegistry:
    """Tests for adapter selection."""

    def test_selects_by_kind(self):
        registry = AdapterRegistry()
        file_adapter = FileAdapter()
        ruleset_adapter = RulesetAdapter()
        registry.register(file_adapter)
        registry.register(ruleset_adapter)

        assert registry.get_for_kind(TargetKind.FILE) is file_adapter
        assert registry.get_for_kind(TargetKind.RULESET) is ruleset_adapter

    def test_latest_registration_wins(self):
        registry = AdapterRegistry()
        first, second = FileAdapter(), FileAdapter()
        registry.register(first)
        registry.register(second)
        assert registry.get_for_kind(TargetKind.FILE) is second

    def test_per_target_override(self, tmp_path):
        registry = AdapterRegistry()
        default, special = FileAdapter(), FileAdapter()
        registry.register(default)
        registry.register_for_target("conf", special)

        assert registry.get(_file_target(tmp_path / "x")) is special
        other = Target(id="other", kind=TargetKind.FILE, locator="/tmp/x")
        assert registry.get(other) is default

    def test_not_found_raises(self):
        registry = AdapterRegistry()
        with pytest.raises(AdapterNotFoundError):
            registry.get_for_kind(TargetKind.SERVICE)

    def test_has_adapter_and_clear(self, tmp_path):
        registry = AdapterRegistry()
        registry.register(FileAdapter())
        target = _file_target(tmp_path / "x")
        assert registry.has_adapter(target)
        registry.clear()
        assert not registry.has_adapter(target)
        assert registry.adapters == []


class TestRenderCommand:
    """Tests for command placeholder substitution."""

    def test_path_and_service(self):
        target = Target(
            id="sshd", kind=TargetKind.SERVICE, locator="/etc/ssh/sshd_config",
            metadata={"service": "ssh"},
        )
        assert render_command(["sshd", "-t", "-f", "{path}"], target) == [
            "sshd", "-t", "-f", "/etc/ssh/sshd_config",
        ]
        assert render_command(["systemctl", "reload", "{service}"], target)[-1] == "ssh"

    def test_service_defaults_to_locator(self):
        target = Target(id="f2b", kind=TargetKind.SERVICE, locator="fail2ban")
        assert render_command(["{service}"], target) == ["fail2ban"]


class TestFileAdapter:
    """Tests for the file adapter."""

    def test_read_write(self, tmp_path):
        path = tmp_path / "a" / "conf"
        adapter = FileAdapter()
        target = _file_target(path)
        adapter.write(target, b"hello\n")
        assert adapter.read(target) == b"hello\n"

    def test_write_preserves_mode(self, tmp_path):
        path = tmp_path / "conf"
        path.write_text("old")
        path.chmod(0o644)
        FileAdapter().write(_file_target(path), b"new")
        assert (path.stat().st_mode & 0o777) == 0o644

    def test_read_missing_raises(self, tmp_path):
        with pytest.raises(TargetNotFound):
            FileAdapter().read(_file_target(tmp_path / "missing"))

    def test_write_failure_raises_apply_failure(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        with pytest.raises(ApplyFailure):
            FileAdapter().write(_file_target(blocker / "conf"), b"x")

    def test_validate_without_hook_passes(self, tmp_path):
        assert FileAdapter().validate(_file_target(tmp_path / "x"), timeout=1.0)

    def test_validate_command_passes(self, tmp_path, sshd_check):
        path = tmp_path / "sshd_config"
        path.write_text("Port 2222\n")
        adapter = FileAdapter(validate_command=sshd_check)
        assert adapter.validate(_file_target(path), timeout=5.0)

    def test_validate_command_failure_carries_output(self, tmp_path, sshd_check):
        path = tmp_path / "sshd_config"
        path.write_text("Prot 2222\n")
        adapter = FileAdapter(validate_command=sshd_check)
        with pytest.raises(ValidationFailure) as exc_info:
            adapter.validate(_file_target(path), timeout=5.0)
        assert "bad line: Prot 2222" in exc_info.value.details["output"]
        assert "What happened" in str(exc_info.value)

    def test_metadata_command_overrides_adapter(self, tmp_path):
        path = tmp_path / "conf"
        path.write_text("x")
        adapter = FileAdapter(validate_command=[PY, "-c", "raise SystemExit(1)"])
        target = _file_target(path, validate_command=[PY, "-c", "pass"])
        assert adapter.validate(target, timeout=5.0)

    def test_validate_command_timeout(self, tmp_path):
        adapter = FileAdapter(validate_command=[PY, "-c", "import time; time.sleep(5)"])
        with pytest.raises(ValidationTimeout):
            adapter.validate(_file_target(tmp_path / "x"), timeout=0.2)

    def test_validate_command_not_found(self, tmp_path):
        adapter = FileAdapter(validate_command=["/nonexistent/zerup-check"])
        with pytest.raises(ValidationFailure):
            adapter.validate(_file_target(tmp_path / "x"), timeout=1.0)

    def test_validator_callable_receives_path(self, tmp_path):
        seen = []
        adapter = FileAdapter(validator=lambda target, path: seen.append(path) or True)
        assert adapter.validate(_file_target(tmp_path / "x"), timeout=1.0)
        assert seen == [str(tmp_path / "x")]


class TestServiceAdapter:
    """Tests for the service adapter."""

    def _target(self, tmp_path, **metadata) -> Target:
        return Target(
            id="sshd", kind=TargetKind.SERVICE, locator=str(tmp_path / "sshd_config"),
            metadata={"service": "ssh", **metadata},
        )

    def test_reload_success(self, tmp_path):
        adapter = ServiceAdapter(reload_command=[PY, "-c", "pass"], is_active_command=None)
        assert adapter.reload(self._target(tmp_path), timeout=5.0)

    def test_reload_failure_raises(self, tmp_path):
        adapter = ServiceAdapter(
            reload_command=[PY, "-c", "import sys; sys.stderr.write('unit failed'); sys.exit(1)"],
            is_active_command=None,
        )
        with pytest.raises(ServiceRestartFailure) as exc_info:
            adapter.reload(self._target(tmp_path), timeout=5.0)
        assert exc_info.value.details["output"] == "unit failed"

    def test_reload_timeout_raises(self, tmp_path):
        adapter = ServiceAdapter(
            reload_command=[PY, "-c", "import time; time.sleep(5)"], is_active_command=None
        )
        with pytest.raises(ServiceRestartFailure):
            adapter.reload(self._target(tmp_path), timeout=0.2)

    def test_health_check_port_listening(self, tmp_path, listener):
        adapter = ServiceAdapter(is_active_command=None, probe_interval=0.05)
        assert adapter.health_check(self._target(tmp_path, port=listener), timeout=2.0)

    def test_health_check_port_closed(self, tmp_path):
        adapter = ServiceAdapter(is_active_command=None, probe_interval=0.05)
        assert not adapter.health_check(self._target(tmp_path, port=_free_port()), timeout=0.3)

    def test_health_check_unit_inactive(self, tmp_path):
        adapter = ServiceAdapter(
            is_active_command=[PY, "-c", "raise SystemExit(3)"], probe_interval=0.05
        )
        assert not adapter.health_check(self._target(tmp_path), timeout=0.5)

    def test_health_check_unit_active(self, tmp_path):
        adapter = ServiceAdapter(is_active_command=[PY, "-c", "pass"], probe_interval=0.05)
        assert adapter.health_check(self._target(tmp_path), timeout=5.0)


class TestRulesetAdapter:
    """Tests for the command-driven ruleset adapter."""

    def _adapter(self, store_path) -> RulesetAdapter:
        return RulesetAdapter(
            dump_command=[
                PY, "-c",
                "import sys; sys.stdout.write(open(sys.argv[1]).read())",
                str(store_path),
            ],
            load_command=[
                PY, "-c",
                "import sys; open(sys.argv[1], 'wb').write(sys.stdin.buffer.read())",
                str(store_path),
            ],
        )

    def test_dump_and_load(self, tmp_path):
        rules = tmp_path / "rules.v4"
        rules.write_text("*filter\n-A INPUT -p tcp --dport 22 -j ACCEPT\nCOMMIT\n")
        adapter = self._adapter(rules)
        target = Target(id="iptables", kind=TargetKind.RULESET, locator="iptables")

        dumped = adapter.read(target)
        assert b"--dport 22" in dumped
        adapter.write(target, b"*filter\nCOMMIT\n")
        assert rules.read_bytes() == b"*filter\nCOMMIT\n"

    def test_dump_failure_raises_backup_failure(self, tmp_path):
        adapter = self._adapter(tmp_path / "missing")
        target = Target(id="iptables", kind=TargetKind.RULESET, locator="iptables")
        with pytest.raises(BackupFailure):
            adapter.read(target)

    def test_no_load_command_raises(self):
        target = Target(id="ufw", kind=TargetKind.RULESET, locator="ufw")
        with pytest.raises(ApplyFailure):
            RulesetAdapter().write(target, b"")

    def test_metadata_commands(self, tmp_path):
        target = Target(
            id="ufw", kind=TargetKind.RULESET, locator="ufw",
            metadata={"dump_command": [PY, "-c", "print('rules')"]},
        )
        assert RulesetAdapter().read(target).strip() == b"rules"

    def test_validate_failure(self):
        adapter = RulesetAdapter(validate_command=[PY, "-c", "raise SystemExit(2)"])
        target = Target(id="ufw", kind=TargetKind.RULESET, locator="ufw")
        with pytest.raises(ValidationFailure):
            adapter.validate(target, timeout=5.0)
