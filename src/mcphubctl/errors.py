"""Exception hierarchy for the reconciliation engine.

Every failure that is scoped to a single instance derives from
:class:`SyncError` and carries a stable ``kind`` string so batch callers can
report it without inspecting the exception type.
"""
from __future__ import annotations

from pathlib import Path


class SyncError(RuntimeError):
    """Base class for per-instance reconciliation failures."""

    kind = "sync"

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class PathUnresolvedError(SyncError):
    """Raised when an instance has no usable configuration path."""

    kind = "path-unresolved"


class ConfigIOError(SyncError):
    """Raised when reading or writing a client config fails at the OS level."""

    kind = "io"

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        cause: OSError | None = None,
    ) -> None:
        super().__init__(message, path=path)
        self.cause = cause


class ConfigParseError(ValueError):
    """Raised by adapters when bytes are not a valid document for the format."""


class ConfigCorruptError(SyncError):
    """Raised when an existing config file cannot be decoded for its client kind."""

    kind = "config-corrupt"


class BackupFailedError(SyncError):
    """Raised when the pre-write backup could not be created."""

    kind = "backup-failed"


class ConfigConflictError(SyncError):
    """Raised when a config file changed on disk between read and write."""

    kind = "conflict"


class ConfigLockedError(SyncError):
    """Raised when another writer holds the config file lock past the timeout."""

    kind = "locked"


class InstanceNotFoundError(LookupError):
    """Raised when an instance identifier does not exist in the registry."""


__all__ = [
    "BackupFailedError",
    "ConfigConflictError",
    "ConfigCorruptError",
    "ConfigIOError",
    "ConfigLockedError",
    "ConfigParseError",
    "InstanceNotFoundError",
    "PathUnresolvedError",
    "SyncError",
]
