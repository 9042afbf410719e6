"""
Key=Value Metadata
~~~~~~~~~~~~~~~~~~

Schema-checked reader/writer for the ``KEY="value"`` text files kept
next to backups, session directories and restore points. The format
stays readable by the shell listings that grep these files, while
every load and dump goes through a pydantic model.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

from zerup_guard.backup.atomic import atomic_write_bytes
from zerup_guard.core.states import (
    Criticality,
    SessionMode,
    SessionStatus,
    TargetKind,
)
from zerup_guard.exceptions import MetadataError

__all__ = [
    "KeyValueModel",
    "BackupMetadata",
    "SessionMetadata",
    "RestorePointMetadata",
    "dumps",
    "loads",
    "read_file",
    "write_file",
]

M = TypeVar("M", bound="KeyValueModel")

_KEY_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_BARE_VALUE_RE = re.compile(r"^[A-Za-z0-9._:/@+,-]*$")


class KeyValueModel(BaseModel):
    """Base for models persisted as key=value text. Aliases are the keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BackupMetadata(KeyValueModel):
    """Sibling ``<targetId>.meta`` file of a stored snapshot."""

    target_id: str = Field(alias="TARGET_ID", min_length=1)
    created_at: datetime = Field(alias="CREATED_AT")
    checksum: str = Field(alias="CHECKSUM", pattern=r"^[0-9a-f]{64}$")
    kind: TargetKind = Field(default=TargetKind.FILE, alias="KIND")
    locator: str = Field(default="", alias="LOCATOR")
    criticality: Criticality = Field(default=Criticality.ADVISORY, alias="CRITICALITY")
    existed: bool = Field(default=True, alias="EXISTED")
    metadata: dict[str, Any] = Field(default_factory=dict, alias="METADATA")

    @field_validator("metadata", mode="before")
    @classmethod
    def parse_metadata(cls, v: object) -> object:
        """Accept the JSON object stored on disk."""
        if isinstance(v, str):
            return json.loads(v) if v.strip() else {}
        return v

    @field_serializer("metadata")
    def dump_metadata(self, v: dict[str, Any]) -> str:
        # Adapter settings are plain JSON in practice; anything else is stringified.
        return json.dumps(v, sort_keys=True, separators=(",", ":"), default=str)


class SessionMetadata(KeyValueModel):
    """``session`` file at the top of a session's backup directory."""

    id: str = Field(alias="ID", min_length=1)
    started_at: datetime = Field(alias="STARTED_AT")
    mode: SessionMode = Field(alias="MODE")
    status: SessionStatus = Field(alias="STATUS")


class RestorePointMetadata(KeyValueModel):
    """``metadata`` file of a restore point directory."""

    name: str = Field(alias="NAME", min_length=1)
    timestamp: int = Field(alias="TIMESTAMP", ge=0)
    description: str = Field(default="", alias="DESCRIPTION")
    created_by: str = Field(default="", alias="CREATED_BY")
    created_from: str = Field(default="", alias="CREATED_FROM")
    id: str = Field(default="", alias="ID")
    records: list[str] = Field(default_factory=list, alias="RECORDS")

    @field_validator("records", mode="before")
    @classmethod
    def split_records(cls, v: object) -> object:
        """Accept the comma-joined on-disk form."""
        if isinstance(v, str):
            return [item for item in v.split(",") if item]
        return v


def _quote(value: str) -> str:
    if _BARE_VALUE_RE.match(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(raw: str) -> str:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        inner = raw[1:-1]
        return re.sub(r"\\(.)", r"\1", inner)
    return raw


def dumps(model: KeyValueModel) -> str:
    """
    Render a model as key=value lines, in field declaration order.

    Raises:
        MetadataError: If a value cannot be represented on one line.
    """
    lines: list[str] = []
    for key, value in model.model_dump(by_alias=True, mode="json").items():
        if isinstance(value, bool):
            text = "true" if value else "false"
        elif isinstance(value, list):
            text = ",".join(str(item) for item in value)
        elif value is None:
            text = ""
        else:
            text = str(value)
        if "\n" in text or "\r" in text:
            raise MetadataError(
                f"Value for {key} spans multiple lines",
                details={"key": key},
            )
        lines.append(f"{key}={_quote(text)}")
    return "\n".join(lines) + "\n"


def loads(text: str, model_cls: type[M]) -> M:
    """
    Parse key=value text into ``model_cls``.

    Blank lines and ``#`` comments are ignored; later duplicates win.

    Raises:
        MetadataError: If a line is malformed or the schema rejects it.
    """
    data: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, raw = stripped.partition("=")
        if not sep or not _KEY_RE.match(key):
            raise MetadataError(
                f"Malformed metadata line {lineno}: {line!r}",
                details={"line": lineno},
            )
        data[key] = _unquote(raw)

    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        raise MetadataError(f"Metadata failed validation: {exc}") from exc


def read_file(path: str, model_cls: type[M]) -> M:
    """Load a key=value file from disk."""
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except OSError as exc:
        raise MetadataError(f"Cannot read metadata file {path}: {exc}") from exc
    return loads(text, model_cls)


def write_file(path: str, model: KeyValueModel, mode: int = 0o600) -> None:
    """Atomically write a model as a key=value file."""
    atomic_write_bytes(path, dumps(model).encode("utf-8"), mode=mode)
