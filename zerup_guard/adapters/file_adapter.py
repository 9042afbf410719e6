"""
File Target Adapter
~~~~~~~~~~~~~~~~~~~

Reads and writes plain configuration files (sshd_config, jail.local)
and validates them with an external syntax checker.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Sequence

from zerup_guard.adapters.base import TargetAdapter, render_command, run_command
from zerup_guard.backup.atomic import atomic_write_bytes
from zerup_guard.core.models import Target
from zerup_guard.core.states import TargetKind
from zerup_guard.exceptions import (
    ApplyFailure,
    TargetNotFound,
    ValidationFailure,
    ValidationTimeout,
)

__all__ = ["FileAdapter"]

logger = logging.getLogger(__name__)

Validator = Callable[[Target, str], bool]


class FileAdapter(TargetAdapter):
    """
    Adapter for ``file`` targets.

    Validation, in order of precedence:
    - ``target.metadata["validate_command"]``, e.g.
      ``["sshd", "-t", "-f", "{path}"]``
    - the adapter's ``validate_command``
    - the adapter's ``validator`` callable ``(target, path) -> bool``
    - none: the file is accepted as written.

    A command passes when it exits with status 0.
    """

    supports_scratch = True

    def __init__(
        self,
        validate_command: Sequence[str] | None = None,
        validator: Validator | None = None,
    ) -> None:
        self._validate_command = list(validate_command) if validate_command else None
        self._validator = validator

    @property
    def kinds(self) -> list[TargetKind]:
        return [TargetKind.FILE]

    def read(self, target: Target) -> bytes:
        try:
            with open(target.locator, "rb") as f:
                return f.read()
        except FileNotFoundError as exc:
            raise TargetNotFound(
                f"File not found: {target.locator}", target_id=target.id
            ) from exc

    def write(self, target: Target, data: bytes) -> None:
        parent = os.path.dirname(target.locator)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            atomic_write_bytes(target.locator, data)
        except OSError as exc:
            raise ApplyFailure(
                f"Cannot write {target.locator}: {exc}", target_id=target.id
            ) from exc

    def validate(self, target: Target, timeout: float) -> bool:
        command = target.metadata.get("validate_command") or self._validate_command
        if command:
            return self._run_validator(target, render_command(command, target), timeout)
        if self._validator is not None:
            return bool(self._validator(target, target.locator))
        return True

    def _run_validator(self, target: Target, command: list[str], timeout: float) -> bool:
        try:
            result = run_command(command, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise ValidationTimeout(
                f"Validator for {target.id} exceeded {timeout:.1f}s",
                target_id=target.id,
                details={"command": command},
            ) from exc
        except OSError as exc:
            raise ValidationFailure(
                f"Validator for {target.id} could not start: {exc}",
                target_id=target.id,
                details={"command": command},
            ) from exc

        if result.returncode != 0:
            output = result.stderr.decode("utf-8", "replace").strip()
            raise ValidationFailure(
                f"Validator for {target.id} exited with {result.returncode}",
                target_id=target.id,
                details={"command": command, "output": output},
                what_happened=(
                    f"{' '.join(command)} rejected the new content:\n"
                    f"{output or '(no output)'}"
                ),
            )
        return True
