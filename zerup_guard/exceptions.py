"""
zerup-guard Custom Exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

All custom exception classes for zerup-guard, organized by domain.
Every distinct failure mode has its own exception type.

**Structured Error Messages**

Errors that can end in a lockout (failed validation, failed health
check, failed service reload, lock contention) provide three
structured fields:
- ``what_happened``: Clear plain-English description
- ``target``: The configuration target or lock scope involved
- ``how_to_fix``: Concrete, actionable steps
"""

__all__ = [
    # Base
    "ZerupGuardError",
    # Config
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    "MetadataError",
    # Change
    "ChangeError",
    "BackupFailure",
    "InsufficientSpace",
    "TargetNotFound",
    "RestoreFailure",
    "ApplyFailure",
    "ValidationFailure",
    "ValidationTimeout",
    "ServiceRestartFailure",
    "HealthCheckFailure",
    # Session
    "SessionError",
    "IllegalTransitionError",
    "SessionClosedError",
    "SessionAbortedError",
    # Lock
    "LockError",
    "LockTimeout",
    # Lookup
    "RestorePointNotFoundError",
    "AdapterNotFoundError",
]


# ── Formatting Helper ────────────────────────────────────────────────────────

_SEPARATOR = "─" * 52


def _format_structured_error(
    title: str,
    what_happened: str,
    target: str,
    how_to_fix: str,
) -> str:
    """Build a rich, structured error message."""
    lines = [
        f"  {title}",
        f"  {_SEPARATOR}",
        "  What happened:",
        *[f"    {line}" for line in what_happened.strip().splitlines()],
        "",
        "  Target:",
        f"    {target}",
        "",
        "  How to fix:",
        *[f"    {line}" for line in how_to_fix.strip().splitlines()],
    ]
    return "\n".join(lines)


# ── Base Exception ───────────────────────────────────────────────────────────


class ZerupGuardError(Exception):
    """Base exception for all zerup-guard errors."""

    def __init__(self, message: str = "", details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Config Exceptions ────────────────────────────────────────────────────────


class ConfigError(ZerupGuardError):
    """Base exception for configuration-related errors."""


class ConfigFileNotFoundError(ConfigError):
    """Raised when a configuration file cannot be found at the specified path."""


class ConfigValidationError(ConfigError):
    """Raised when configuration values fail validation."""


class MetadataError(ZerupGuardError):
    """Raised when a key=value metadata file is malformed or fails its schema."""


# ── Change Exceptions ────────────────────────────────────────────────────────


class ChangeError(ZerupGuardError):
    """
    Base exception for failures while driving a single Change.

    Carries the id of the target the failing Change was mutating so the
    caller can render it without holding on to the Change itself.
    """

    def __init__(
        self,
        message: str = "",
        target_id: str = "",
        details: dict | None = None,
    ) -> None:
        self.target_id = target_id
        super().__init__(message, details)


class BackupFailure(ChangeError):
    """Raised when a target cannot be snapshotted into the backup store."""


class InsufficientSpace(BackupFailure):
    """Raised when the backup store does not have room for a snapshot."""


class TargetNotFound(BackupFailure):
    """Raised when a target's locator does not resolve to anything readable."""


class RestoreFailure(ChangeError):
    """Raised when a backup is missing, corrupted, or cannot be written back."""


class ApplyFailure(ChangeError):
    """Raised when an adapter fails to write the proposed value."""


class _StructuredChangeError(ChangeError):
    """A ChangeError rendered with what-happened / target / how-to-fix."""

    _default_how_to_fix = ""

    def __init__(
        self,
        message: str = "",
        target_id: str = "",
        details: dict | None = None,
        what_happened: str = "",
        how_to_fix: str = "",
    ) -> None:
        self.what_happened = what_happened or message
        self.how_to_fix = how_to_fix or self._default_how_to_fix
        super().__init__(message, target_id, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"{type(self).__name__}: {self.args[0]}",
            what_happened=self.what_happened,
            target=self.target_id or "(unknown)",
            how_to_fix=self.how_to_fix,
        )


class ValidationFailure(_StructuredChangeError):
    """
    Raised when a target's validation hook rejects the applied value.

    The target has already been restored from its backup when this
    is raised.
    """

    _default_how_to_fix = (
        "1. Inspect the validator output in the error details\n"
        "2. Correct the proposed value and propose a new Change\n"
        "3. The previous content has been restored; no reload was issued"
    )


class ValidationTimeout(ValidationFailure):
    """Raised when a validation hook exceeds its time bound."""

    _default_how_to_fix = (
        "1. Check that the validator command is not waiting on input\n"
        "2. Increase the bound in your config:\n"
        "   validation:\n"
        "     hook_timeout_seconds: 30\n"
        "3. The previous content has been restored; no reload was issued"
    )


class ServiceRestartFailure(_StructuredChangeError):
    """Raised when reloading a service after a committed write fails."""

    _default_how_to_fix = (
        "1. Check the unit with: systemctl status <service>\n"
        "2. The previous configuration has been restored and reloaded\n"
        "3. Keep your current session open until the service is verified"
    )


class HealthCheckFailure(_StructuredChangeError):
    """Raised when a service does not pass its post-reload health probe."""

    _default_how_to_fix = (
        "1. Confirm the expected port is open with: ss -tln\n"
        "2. Increase the probe window in your config:\n"
        "   validation:\n"
        "     health_check_timeout_seconds: 15\n"
        "3. The previous configuration has been restored and reloaded"
    )


# ── Session Exceptions ───────────────────────────────────────────────────────


class SessionError(ZerupGuardError):
    """Base exception for session lifecycle errors."""


class IllegalTransitionError(SessionError):
    """Raised when a Change is asked to move to a state it cannot reach."""


class SessionClosedError(SessionError):
    """Raised when proposing to or driving a session that is no longer open."""


class SessionAbortedError(SessionError):
    """Raised when a Change is started on a session whose abort was requested."""


# ── Lock Exceptions ──────────────────────────────────────────────────────────


class LockError(ZerupGuardError):
    """Base exception for host lock errors."""


class LockTimeout(LockError):
    """
    Raised when another live holder keeps the host lock past the timeout.

    Structured fields:
    - ``what_happened``: who holds the lock and for how long we waited
    - ``target``: the lock file path
    - ``how_to_fix``: how to resolve the contention
    """

    def __init__(
        self,
        message: str = "Host lock is held by another run",
        lock_path: str = "",
        holder_pid: int | None = None,
        waited_seconds: float = 0.0,
        details: dict | None = None,
        what_happened: str = "",
        how_to_fix: str = "",
    ) -> None:
        self.lock_path = lock_path
        self.holder_pid = holder_pid
        self.waited_seconds = waited_seconds
        self.what_happened = what_happened or (
            f"Process {holder_pid} holds the hardening lock; "
            f"gave up after {waited_seconds:.1f}s."
        )
        self.how_to_fix = how_to_fix or (
            "1. Wait for the other hardening run to finish\n"
            f"2. Check the holder with: ps -p {holder_pid}\n"
            "3. Only if that process is gone, remove the lock file by hand"
        )
        super().__init__(message, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"LockTimeout: {self.args[0]}",
            what_happened=self.what_happened,
            target=self.lock_path or "(unknown)",
            how_to_fix=self.how_to_fix,
        )


# ── Lookup Exceptions ────────────────────────────────────────────────────────


class RestorePointNotFoundError(ZerupGuardError):
    """Raised when a restore point id or name does not exist."""


class AdapterNotFoundError(ZerupGuardError):
    """Raised when no adapter is registered for a target's kind."""
