"""Shared fixtures for zerup-guard tests."""

from __future__ import annotations

import socket
import sys

import pytest

from zerup_guard import (
    AdapterRegistry,
    ConfigGuard,
    Criticality,
    FileAdapter,
    Target,
    TargetAdapter,
    TargetKind,
)
from zerup_guard.config.loader import load_config_from_dict
from zerup_guard.exceptions import ApplyFailure, TargetNotFound

# Stand-in for ``sshd -t -f <path>``: every non-blank line must start
# with a known directive.
SSHD_CHECK = [
    sys.executable,
    "-c",
    (
        "import sys\n"
        "known = {'Port', 'PermitRootLogin', 'PasswordAuthentication'}\n"
        "lines = [l for l in open(sys.argv[1]).read().splitlines() if l.strip()]\n"
        "bad = [l for l in lines if l.split()[0] not in known]\n"
        "sys.stderr.write(''.join('bad line: %s\\n' % l for l in bad))\n"
        "sys.exit(1 if bad else 0)\n"
    ),
    "{path}",
]

SSHD_ORIGINAL = "Port 22\nPermitRootLogin no\n"


class RecordingServiceAdapter(FileAdapter):
    """Service adapter over a real file that records reloads instead of running systemctl."""

    def __init__(self, validate_command=None, reload_ok=True, healthy=True) -> None:
        super().__init__(validate_command=validate_command)
        self.reload_ok = reload_ok
        self.healthy = healthy
        self.calls: list[tuple[str, str]] = []

    @property
    def kinds(self) -> list[TargetKind]:
        return [TargetKind.SERVICE]

    def write(self, target: Target, data: bytes) -> None:
        self.calls.append(("write", target.id))
        super().write(target, data)

    def validate(self, target: Target, timeout: float) -> bool:
        self.calls.append(("validate", target.id))
        return super().validate(target, timeout)

    def reload(self, target: Target, timeout: float) -> bool:
        self.calls.append(("reload", target.id))
        return self.reload_ok

    def health_check(self, target: Target, timeout: float) -> bool:
        self.calls.append(("health_check", target.id))
        return self.healthy

    def count(self, call: str) -> int:
        return sum(1 for name, _ in self.calls if name == call)


class MemoryRulesetAdapter(TargetAdapter):
    """Ruleset adapter keeping rule dumps in a dict, keyed by target id."""

    def __init__(self, rules=None, fail_write_for=(), invalid_for=(), crash_write_for=()) -> None:
        self.rules: dict[str, bytes] = dict(rules or {})
        self.fail_write_for = set(fail_write_for)
        self.invalid_for = set(invalid_for)
        self.crash_write_for = set(crash_write_for)
        self.calls: list[tuple[str, str]] = []

    @property
    def kinds(self) -> list[TargetKind]:
        return [TargetKind.RULESET]

    def read(self, target: Target) -> bytes:
        self.calls.append(("read", target.id))
        if target.id not in self.rules:
            raise TargetNotFound(f"No rules for {target.id}", target_id=target.id)
        return self.rules[target.id]

    def write(self, target: Target, data: bytes) -> None:
        self.calls.append(("write", target.id))
        if target.id in self.fail_write_for:
            self.fail_write_for.discard(target.id)
            raise ApplyFailure("rule conflicts with existing rule", target_id=target.id)
        if target.id in self.crash_write_for:
            # Half-written before the tool blew up.
            self.crash_write_for.discard(target.id)
            self.rules[target.id] = data[: len(data) // 2]
            raise RuntimeError("ufw: rule conflict")
        self.rules[target.id] = data

    def validate(self, target: Target, timeout: float) -> bool:
        self.calls.append(("validate", target.id))
        return target.id not in self.invalid_for

    def writes(self) -> list[str]:
        return [target_id for name, target_id in self.calls if name == "write"]


@pytest.fixture
def config(tmp_path):
    """Config rooted in a temp directory with short time bounds."""
    return load_config_from_dict(
        {
            "paths": {
                "backup_root": str(tmp_path / "backups"),
                "restore_point_root": str(tmp_path / "backups" / "rollback"),
                "runtime_dir": str(tmp_path / "run"),
            },
            "backup": {"min_free_bytes": 0},
            "lock": {"timeout_seconds": 0.5, "poll_interval_seconds": 0.05},
            "validation": {
                "hook_timeout_seconds": 5.0,
                "health_check_timeout_seconds": 1.0,
                "reload_timeout_seconds": 5.0,
            },
            "session": {"mode": "non_interactive"},
        }
    )


@pytest.fixture
def service_adapter() -> RecordingServiceAdapter:
    return RecordingServiceAdapter()


@pytest.fixture
def ruleset_adapter() -> MemoryRulesetAdapter:
    return MemoryRulesetAdapter(
        rules={
            "ufw-rules": b"-A ufw-user-input -p tcp --dport 22 -j ACCEPT\n",
            "fail2ban-jail": b"[sshd]\nenabled = false\n",
        }
    )


@pytest.fixture
def registry(service_adapter, ruleset_adapter) -> AdapterRegistry:
    reg = AdapterRegistry()
    reg.register(FileAdapter())
    reg.register(service_adapter)
    reg.register(ruleset_adapter)
    return reg


@pytest.fixture
def guard(config, registry) -> ConfigGuard:
    """A ConfigGuard over temp directories and recording adapters."""
    return ConfigGuard(config=config, adapters=registry)


@pytest.fixture
def sshd_file(tmp_path):
    path = tmp_path / "etc" / "ssh" / "sshd_config"
    path.parent.mkdir(parents=True)
    path.write_text(SSHD_ORIGINAL)
    return path


@pytest.fixture
def sshd_target(sshd_file) -> Target:
    return Target(
        id="sshd_config",
        kind=TargetKind.SERVICE,
        locator=str(sshd_file),
        criticality=Criticality.CRITICAL,
        metadata={"service": "ssh", "validate_command": SSHD_CHECK},
    )


@pytest.fixture
def ufw_target() -> Target:
    return Target(id="ufw-rules", kind=TargetKind.RULESET, locator="ufw")


@pytest.fixture
def jail_target() -> Target:
    return Target(id="fail2ban-jail", kind=TargetKind.RULESET, locator="fail2ban")


@pytest.fixture
def listener():
    """A TCP socket listening on an ephemeral localhost port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def sshd_check() -> list[str]:
    """Validate command standing in for ``sshd -t -f {path}``."""
    return list(SSHD_CHECK)
