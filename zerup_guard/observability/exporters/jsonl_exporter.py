"""
JSON Lines Exporter
~~~~~~~~~~~~~~~~~~~

Appends audit entries as JSON lines to a journal file or stream.
"""

from __future__ import annotations

import json
import os
import sys
from typing import TextIO

from zerup_guard.core.models import AuditEntry

__all__ = ["JsonlExporter"]


class JsonlExporter:
    """
    Exporter that appends audit entries as JSON lines.

    With a ``path``, each entry is appended and flushed to that file,
    which is created with mode 0600. Otherwise entries go to ``stream``
    (stdout by default).
    """

    def __init__(self, path: str | None = None, stream: TextIO | None = None) -> None:
        self._path = path
        self._stream = stream or sys.stdout

    @property
    def path(self) -> str | None:
        return self._path

    def export(self, entry: AuditEntry) -> None:
        """Write the entry as one JSON line."""
        line = json.dumps(entry.to_dict(), default=str) + "\n"
        if self._path is None:
            self._stream.write(line)
            self._stream.flush()
            return

        parent = os.path.dirname(self._path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
