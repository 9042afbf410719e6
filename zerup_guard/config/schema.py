"""
Configuration Schema
~~~~~~~~~~~~~~~~~~~~

Pydantic models for validating zerup-guard configuration.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

from zerup_guard.core.states import SessionMode

__all__ = [
    "GuardConfig",
    "PathsConfig",
    "BackupConfig",
    "LockConfig",
    "ValidationConfig",
    "SessionConfig",
    "RestorePointsConfig",
    "LoggingConfig",
]


class PathsConfig(BaseModel):
    """Filesystem locations."""

    backup_root: str = "/var/backups/zerup"
    restore_point_root: str = "/var/backups/zerup/rollback"
    runtime_dir: str = "/run/zerup"
    audit_journal: str | None = None


class BackupConfig(BaseModel):
    """Backup store settings."""

    retention_days: int = Field(default=30, ge=0)
    min_free_bytes: int = Field(default=100 * 1024 * 1024, ge=0)
    dir_mode: int = Field(default=0o700, ge=0, le=0o7777)

    @field_validator("dir_mode", mode="before")
    @classmethod
    def parse_octal(cls, v: object) -> object:
        """Accept "0o700" / "700" strings as octal."""
        if isinstance(v, str):
            text = v.strip().lower().removeprefix("0o")
            try:
                return int(text, 8)
            except ValueError:
                raise ValueError(f"Invalid octal mode: {v!r}")
        return v


class LockConfig(BaseModel):
    """Host lock settings."""

    scope: str = Field(default="host", pattern=r"^[A-Za-z0-9._-]+$")
    timeout_seconds: float = Field(default=30.0, ge=0.0)
    stale_after_seconds: float = Field(default=3600.0, gt=0.0)
    poll_interval_seconds: float = Field(default=0.25, gt=0.0)


class ValidationConfig(BaseModel):
    """Time bounds for adapter hooks."""

    hook_timeout_seconds: float = Field(default=10.0, gt=0.0)
    health_check_timeout_seconds: float = Field(default=5.0, gt=0.0)
    reload_timeout_seconds: float = Field(default=30.0, gt=0.0)


class SessionConfig(BaseModel):
    """Session defaults."""

    mode: SessionMode = SessionMode.INTERACTIVE
    non_interactive_default: bool = True


class RestorePointsConfig(BaseModel):
    """Restore point settings."""

    restore_order: list[str] = Field(default_factory=list)
    safety_snapshot: bool = True


class LoggingConfig(BaseModel):
    """Logging settings used by the CLI."""

    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate the log level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v!r}")
        return level


class GuardConfig(BaseModel):
    """
    Root configuration model for zerup-guard.

    Validated on load with clear error messages for invalid values.
    """

    version: str = "1.0"
    paths: PathsConfig = Field(default_factory=PathsConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    restore_points: RestorePointsConfig = Field(default_factory=RestorePointsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
