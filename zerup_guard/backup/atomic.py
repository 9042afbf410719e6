"""
Atomic File Writes
~~~~~~~~~~~~~~~~~~

Write-to-temp-then-rename helpers shared by the backup store, the
metadata serializer and the file adapter. A concurrent reader sees
either the old file or the complete new one, never a partial write.
"""

from __future__ import annotations

import os
import tempfile

__all__ = ["atomic_write_bytes", "TEMP_PREFIX"]

TEMP_PREFIX = ".zerup-tmp-"


def atomic_write_bytes(path: str, data: bytes, mode: int | None = None) -> None:
    """
    Atomically replace ``path`` with ``data``.

    Args:
        path: Destination file.
        data: Full new content.
        mode: Permission bits for the new file. When None, the mode of
            an existing destination is preserved, else 0o600.

    Raises:
        OSError: If the temp file cannot be written or renamed. The
            destination is untouched in that case.
    """
    directory = os.path.dirname(os.path.abspath(path))
    if mode is None:
        try:
            mode = os.stat(path).st_mode & 0o7777
        except FileNotFoundError:
            mode = 0o600

    fd, tmp_path = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise
