"""
Bounded Hook Runner
~~~~~~~~~~~~~~~~~~~

Runs adapter hooks (validate, reload, health check) inline with a time
bound and turns every way a hook can fail into the matching error kind.

Hooks run on the calling thread. Each adapter receives its bound and
must cap its own subprocesses; the runner also measures elapsed time
and rejects a hook that overran, even when it reported success.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable

from zerup_guard.adapters.base import TargetAdapter
from zerup_guard.config.schema import ValidationConfig
from zerup_guard.core.models import Target
from zerup_guard.exceptions import (
    ChangeError,
    HealthCheckFailure,
    ServiceRestartFailure,
    ValidationFailure,
    ValidationTimeout,
)

__all__ = ["HookRunner"]

logger = logging.getLogger(__name__)

Hook = Callable[[Target, float], bool]


class HookRunner:
    """
    Applies the timeout contract to adapter hooks.

    Args:
        config: Per-hook time bounds.
    """

    def __init__(self, config: ValidationConfig | None = None) -> None:
        self._config = config or ValidationConfig()

    @property
    def config(self) -> ValidationConfig:
        return self._config

    def validate(self, adapter: TargetAdapter, target: Target) -> None:
        """
        Run the validation hook.

        Raises:
            ValidationTimeout: If the hook overran its bound.
            ValidationFailure: If the hook rejected the value or crashed.
        """
        self._run(
            "validate",
            adapter.validate,
            target,
            self._config.hook_timeout_seconds,
            failure_cls=ValidationFailure,
            timeout_cls=ValidationTimeout,
        )

    def reload(self, adapter: TargetAdapter, target: Target) -> None:
        """
        Ask the service to pick up the committed value.

        Raises:
            ServiceRestartFailure: If the reload failed or overran.
        """
        self._run(
            "reload",
            adapter.reload,
            target,
            self._config.reload_timeout_seconds,
            failure_cls=ServiceRestartFailure,
            timeout_cls=ServiceRestartFailure,
        )

    def health_check(self, adapter: TargetAdapter, target: Target) -> None:
        """
        Probe the reloaded service.

        Raises:
            HealthCheckFailure: If the probe did not pass within its bound.
        """
        self._run(
            "health_check",
            adapter.health_check,
            target,
            self._config.health_check_timeout_seconds,
            failure_cls=HealthCheckFailure,
            timeout_cls=HealthCheckFailure,
        )

    def _run(
        self,
        name: str,
        hook: Hook,
        target: Target,
        timeout: float,
        failure_cls: type[ChangeError],
        timeout_cls: type[ChangeError],
    ) -> None:
        start = time.monotonic()
        try:
            ok = hook(target, timeout)
        except ChangeError:
            raise
        except subprocess.TimeoutExpired as exc:
            raise timeout_cls(
                f"{name} hook for {target.id} exceeded {timeout:.1f}s",
                target_id=target.id,
                details={"hook": name, "timeout": timeout},
            ) from exc
        except Exception as exc:
            raise failure_cls(
                f"{name} hook for {target.id} raised {type(exc).__name__}: {exc}",
                target_id=target.id,
                details={"hook": name},
            ) from exc

        elapsed = time.monotonic() - start
        logger.debug("%s hook for %s took %.3fs", name, target.id, elapsed)

        if elapsed > timeout:
            raise timeout_cls(
                f"{name} hook for {target.id} took {elapsed:.1f}s, "
                f"over its {timeout:.1f}s bound",
                target_id=target.id,
                details={"hook": name, "timeout": timeout, "elapsed": elapsed},
            )
        if not ok:
            raise failure_cls(
                f"{name} hook for {target.id} reported failure",
                target_id=target.id,
                details={"hook": name},
            )
