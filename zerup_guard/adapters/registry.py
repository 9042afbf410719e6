"""
Adapter Registry
~~~~~~~~~~~~~~~~

Maps target kinds to their adapters, with per-target overrides, so
every hardening module goes through one adapter per resource kind.
"""

from __future__ import annotations

import logging

from zerup_guard.adapters.base import TargetAdapter
from zerup_guard.core.models import Target
from zerup_guard.core.states import TargetKind
from zerup_guard.exceptions import AdapterNotFoundError

__all__ = ["AdapterRegistry"]

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Registry mapping target kinds to adapters.

    Per-target registrations win over kind registrations; among kind
    registrations, the most recently registered matching adapter is used.
    """

    def __init__(self) -> None:
        self._adapters: list[TargetAdapter] = []
        self._per_target: dict[str, TargetAdapter] = {}

    def register(self, adapter: TargetAdapter) -> None:
        """
        Register an adapter for the kinds it declares.

        Args:
            adapter: The adapter to register.
        """
        self._adapters.insert(0, adapter)
        logger.debug(
            "Registered adapter %s for %s",
            adapter.__class__.__name__,
            [k.value for k in adapter.kinds],
        )

    def register_for_target(self, target_id: str, adapter: TargetAdapter) -> None:
        """
        Register an adapter for one specific target.

        Args:
            target_id: The exact target id to handle.
            adapter: The adapter instance.
        """
        self._per_target[target_id] = adapter

    def get(self, target: Target) -> TargetAdapter:
        """
        Get the adapter for a target.

        Raises:
            AdapterNotFoundError: If nothing handles the target.
        """
        if target.id in self._per_target:
            return self._per_target[target.id]
        return self.get_for_kind(target.kind)

    def get_for_kind(self, kind: TargetKind) -> TargetAdapter:
        """
        Get the adapter registered for a kind.

        Raises:
            AdapterNotFoundError: If no adapter is registered.
        """
        for adapter in self._adapters:
            if adapter.can_handle(kind):
                return adapter
        raise AdapterNotFoundError(f"No adapter registered for target kind: {kind.value}")

    def has_adapter(self, target: Target) -> bool:
        """Check if an adapter exists for the given target."""
        if target.id in self._per_target:
            return True
        return any(a.can_handle(target.kind) for a in self._adapters)

    @property
    def adapters(self) -> list[TargetAdapter]:
        """Return all kind-registered adapters."""
        return list(self._adapters)

    def clear(self) -> None:
        """Remove all registered adapters."""
        self._adapters.clear()
        self._per_target.clear()
