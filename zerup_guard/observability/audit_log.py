"""
Audit Log
~~~~~~~~~

Structured journal of every Change state transition.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from zerup_guard.core.models import AuditEntry
from zerup_guard.core.states import ChangeState

__all__ = ["AuditLog"]

logger = logging.getLogger(__name__)


class AuditLog:
    """
    In-memory audit journal with filtering and export support.

    Every transition the engine performs gets an entry here, including
    dry-run transitions. Entries are forwarded to configured exporters;
    an exporter failure is logged and never interrupts the engine.
    """

    def __init__(self, max_entries: int = 10000) -> None:
        self._entries: list[AuditEntry] = []
        self._max_entries = max_entries
        self._lock = threading.RLock()
        self._exporters: list[Any] = []

    def add_exporter(self, exporter: Any) -> None:
        """Add an exporter to receive audit entries."""
        self._exporters.append(exporter)

    def write(self, entry: AuditEntry) -> None:
        """
        Record an entry and forward it to exporters.

        Args:
            entry: The audit entry to record.
        """
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                self._entries = self._entries[-self._max_entries :]

        for exporter in self._exporters:
            try:
                exporter.export(entry)
            except Exception as exc:
                logger.error(
                    "Exporter %s failed: %s",
                    type(exporter).__name__,
                    exc,
                )

    def query(
        self,
        session_id: str | None = None,
        target_id: str | None = None,
        change_id: str | None = None,
        to_state: ChangeState | None = None,
    ) -> list[AuditEntry]:
        """Return entries matching every given filter, oldest first."""
        with self._lock:
            entries = list(self._entries)
        return [
            e
            for e in entries
            if (session_id is None or e.session_id == session_id)
            and (target_id is None or e.target_id == target_id)
            and (change_id is None or e.change_id == change_id)
            and (to_state is None or e.to_state == to_state)
        ]

    def history(self, change_id: str) -> list[ChangeState]:
        """Return the sequence of states a Change moved through."""
        return [e.to_state for e in self.query(change_id=change_id)]

    def clear(self) -> None:
        """Clear all audit entries."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
