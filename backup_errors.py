"""
Exceptions raised by the database backup orchestrator.

Each class maps to the narrowest scope a failure is allowed to abort:
a single include or project (ConfigError, ValidationError), a project's
cloud path (StorageError), a single database (ExecutionError) or the
whole run (DependencyError).
"""
from __future__ import annotations


class BackupError(Exception):
    """Base class for expected backup failures."""


class ConfigError(BackupError):
    """Raised when a settings, manifest or project file is missing, unreadable or malformed."""


class ValidationError(BackupError):
    """Raised when a project preflight step rejects the configuration."""


class DependencyError(BackupError):
    """Raised when a library or base directory needed by every project is unavailable."""


class StorageError(BackupError):
    """Raised when a cloud bucket or prefix cannot be reached or written."""


class ExecutionError(BackupError):
    """Raised when a dump, compression or move step fails for one database."""
