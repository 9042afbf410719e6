"""
Ruleset Target Adapter
~~~~~~~~~~~~~~~~~~~~~~

Handles ``ruleset`` targets whose state lives inside a running tool
(iptables, ufw, fail2ban) and is moved in and out through dump/load
commands rather than a single file.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence

from zerup_guard.adapters.base import TargetAdapter, render_command, run_command
from zerup_guard.core.models import Target
from zerup_guard.core.states import TargetKind
from zerup_guard.exceptions import (
    ApplyFailure,
    BackupFailure,
    ValidationFailure,
    ValidationTimeout,
)

__all__ = ["RulesetAdapter"]

logger = logging.getLogger(__name__)


class RulesetAdapter(TargetAdapter):
    """
    Adapter for ``ruleset`` targets driven by external commands.

    Commands come from target metadata (``dump_command``,
    ``load_command``, ``validate_command``) or the adapter defaults.
    The dump command prints the serialized rules on stdout; the load
    command reads them from stdin; the validate command, if any, must
    exit 0 for the loaded rules to be accepted.

    Example for iptables::

        RulesetAdapter(
            dump_command=["iptables-save"],
            load_command=["iptables-restore"],
        )
    """

    def __init__(
        self,
        dump_command: Sequence[str] | None = None,
        load_command: Sequence[str] | None = None,
        validate_command: Sequence[str] | None = None,
        command_timeout: float = 30.0,
    ) -> None:
        self._dump_command = list(dump_command) if dump_command else None
        self._load_command = list(load_command) if load_command else None
        self._validate_command = list(validate_command) if validate_command else None
        self._command_timeout = command_timeout

    @property
    def kinds(self) -> list[TargetKind]:
        return [TargetKind.RULESET]

    def _command(self, target: Target, key: str, default: list[str] | None) -> list[str] | None:
        command = target.metadata.get(key) or default
        return render_command(command, target) if command else None

    def read(self, target: Target) -> bytes:
        command = self._command(target, "dump_command", self._dump_command)
        if command is None:
            raise BackupFailure(
                f"No dump command configured for {target.id}", target_id=target.id
            )
        try:
            result = run_command(command, timeout=self._command_timeout)
        except (subprocess.TimeoutExpired, OSError) as exc:
            raise BackupFailure(
                f"Dumping {target.id} failed: {exc}", target_id=target.id
            ) from exc
        if result.returncode != 0:
            raise BackupFailure(
                f"Dumping {target.id} exited with {result.returncode}",
                target_id=target.id,
                details={"output": result.stderr.decode("utf-8", "replace")},
            )
        return result.stdout

    def write(self, target: Target, data: bytes) -> None:
        command = self._command(target, "load_command", self._load_command)
        if command is None:
            raise ApplyFailure(
                f"No load command configured for {target.id}", target_id=target.id
            )
        try:
            result = run_command(command, timeout=self._command_timeout, input_data=data)
        except (subprocess.TimeoutExpired, OSError) as exc:
            raise ApplyFailure(
                f"Loading {target.id} failed: {exc}", target_id=target.id
            ) from exc
        if result.returncode != 0:
            raise ApplyFailure(
                f"Loading {target.id} exited with {result.returncode}",
                target_id=target.id,
                details={"output": result.stderr.decode("utf-8", "replace")},
            )

    def validate(self, target: Target, timeout: float) -> bool:
        command = self._command(target, "validate_command", self._validate_command)
        if command is None:
            return True
        try:
            result = run_command(command, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise ValidationTimeout(
                f"Validator for {target.id} exceeded {timeout:.1f}s",
                target_id=target.id,
            ) from exc
        except OSError as exc:
            raise ValidationFailure(
                f"Validator for {target.id} could not start: {exc}",
                target_id=target.id,
            ) from exc
        if result.returncode != 0:
            raise ValidationFailure(
                f"Validator for {target.id} exited with {result.returncode}",
                target_id=target.id,
                details={"output": result.stderr.decode("utf-8", "replace")},
            )
        return True
