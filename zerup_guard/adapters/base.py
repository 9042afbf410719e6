"""
Base Target Adapter
~~~~~~~~~~~~~~~~~~~

Abstract base class for the per-kind adapters that read, write,
validate and reload configuration targets on behalf of the engine.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Sequence

from zerup_guard.core.models import Target
from zerup_guard.core.states import TargetKind

__all__ = ["TargetAdapter", "run_command", "render_command"]

logger = logging.getLogger(__name__)


def render_command(command: Sequence[str], target: Target) -> list[str]:
    """
    Substitute ``{path}`` and ``{service}`` in each argument.

    ``{path}`` is the target's locator, which points at the scratch copy
    during dry runs.
    """
    values = {
        "{path}": target.locator,
        "{service}": str(target.metadata.get("service", target.locator)),
    }
    rendered: list[str] = []
    for arg in command:
        for placeholder, value in values.items():
            arg = arg.replace(placeholder, value)
        rendered.append(arg)
    return rendered


def run_command(
    command: Sequence[str],
    timeout: float,
    input_data: bytes | None = None,
) -> subprocess.CompletedProcess[bytes]:
    """
    Run an external tool with a hard time bound.

    Raises:
        subprocess.TimeoutExpired: If the tool outlives ``timeout``.
        OSError: If the tool cannot be started.
    """
    logger.debug("Running %s (timeout=%.1fs)", " ".join(command), timeout)
    return subprocess.run(
        list(command),
        input=input_data,
        capture_output=True,
        timeout=timeout,
        check=False,
    )


class TargetAdapter(ABC):
    """
    Abstract base class for target adapters.

    Each adapter is responsible for:
    1. Reading a target's persisted state (read)
    2. Writing a full new state (write)
    3. Checking that a written state is acceptable (validate)
    4. For services, reloading and probing health (reload, health_check)

    Subclasses must implement kinds, read() and write(). The hooks
    default to success so that plain files need no service handling.
    Hooks return True/False or raise a ChangeError subclass with details.
    """

    #: Whether validate() can run against a scratch copy in dry runs.
    supports_scratch: bool = False

    @property
    @abstractmethod
    def kinds(self) -> list[TargetKind]:
        """Target kinds this adapter handles."""
        ...

    @abstractmethod
    def read(self, target: Target) -> bytes:
        """
        Return the target's current persisted state.

        Raises:
            TargetNotFound: If the target does not exist.
        """
        ...

    @abstractmethod
    def write(self, target: Target, data: bytes) -> None:
        """Replace the target's state with ``data``."""
        ...

    def validate(self, target: Target, timeout: float) -> bool:
        """Check the target's current state. Default: always valid."""
        return True

    def reload(self, target: Target, timeout: float) -> bool:
        """Make the running service pick up the new state."""
        return True

    def health_check(self, target: Target, timeout: float) -> bool:
        """Probe the service until healthy or ``timeout`` elapses."""
        return True

    def can_handle(self, kind: TargetKind) -> bool:
        """Check if this adapter supports the given target kind."""
        return kind in self.kinds

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} kinds={[k.value for k in self.kinds]!r}>"
