"""
Service Target Adapter
~~~~~~~~~~~~~~~~~~~~~~

Handles ``service`` targets: a configuration file owned by a systemd
unit. Writes go to the file; commit reloads the unit and probes that
it is active and, optionally, listening on its port.
"""

from __future__ import annotations

import logging
import socket
import subprocess
import time
from collections.abc import Sequence

from zerup_guard.adapters.base import render_command, run_command
from zerup_guard.adapters.file_adapter import FileAdapter, Validator
from zerup_guard.core.models import Target
from zerup_guard.core.states import TargetKind
from zerup_guard.exceptions import ServiceRestartFailure

__all__ = ["ServiceAdapter"]

logger = logging.getLogger(__name__)

_DEFAULT_RELOAD = ("systemctl", "reload-or-restart", "{service}")
_DEFAULT_IS_ACTIVE = ("systemctl", "is-active", "--quiet", "{service}")


class ServiceAdapter(FileAdapter):
    """
    Adapter for ``service`` targets.

    Target metadata keys:
    - ``service``: systemd unit name (defaults to the locator).
    - ``port``: TCP port that must accept connections after reload.
    - ``host``: address to probe (default 127.0.0.1).
    - ``validate_command``: as for FileAdapter.
    - ``reload_command``: overrides the adapter's reload command.

    Args:
        reload_command: Command issued on commit.
        is_active_command: Command that must exit 0 for the unit to be
            healthy. None skips the unit check.
        probe_interval: Seconds between health probes.
    """

    def __init__(
        self,
        validate_command: Sequence[str] | None = None,
        validator: Validator | None = None,
        reload_command: Sequence[str] = _DEFAULT_RELOAD,
        is_active_command: Sequence[str] | None = _DEFAULT_IS_ACTIVE,
        probe_interval: float = 0.25,
    ) -> None:
        super().__init__(validate_command=validate_command, validator=validator)
        self._reload_command = list(reload_command)
        self._is_active_command = list(is_active_command) if is_active_command else None
        self._probe_interval = probe_interval

    @property
    def kinds(self) -> list[TargetKind]:
        return [TargetKind.SERVICE]

    def reload(self, target: Target, timeout: float) -> bool:
        command = render_command(target.metadata.get("reload_command") or self._reload_command, target)
        try:
            result = run_command(command, timeout=timeout)
        except (subprocess.TimeoutExpired, OSError) as exc:
            raise ServiceRestartFailure(
                f"Reload of {target.id} did not complete: {exc}",
                target_id=target.id,
                details={"command": command},
            ) from exc

        if result.returncode != 0:
            output = result.stderr.decode("utf-8", "replace").strip()
            raise ServiceRestartFailure(
                f"Reload of {target.id} exited with {result.returncode}",
                target_id=target.id,
                details={"command": command, "output": output},
            )
        logger.info("Reloaded %s", target.metadata.get("service", target.locator))
        return True

    def health_check(self, target: Target, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        port = target.metadata.get("port")
        host = str(target.metadata.get("host", "127.0.0.1"))

        while True:
            remaining = deadline - time.monotonic()
            if self._unit_active(target, max(remaining, 0.1)) and (
                port is None or self._port_open(host, int(port), max(remaining, 0.1))
            ):
                return True
            if time.monotonic() + self._probe_interval >= deadline:
                logger.warning(
                    "Health check for %s failed after %.1fs", target.id, timeout
                )
                return False
            time.sleep(self._probe_interval)

    def _unit_active(self, target: Target, timeout: float) -> bool:
        if self._is_active_command is None:
            return True
        command = render_command(self._is_active_command, target)
        try:
            return run_command(command, timeout=timeout).returncode == 0
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.debug("Unit check for %s failed: %s", target.id, exc)
            return False

    @staticmethod
    def _port_open(host: str, port: int, timeout: float) -> bool:
        try:
            with socket.create_connection((host, port), timeout=min(timeout, 1.0)):
                return True
        except OSError:
            return False
