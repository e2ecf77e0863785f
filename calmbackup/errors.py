"""
Domain exceptions for calmbackup.

Notes
-----
Engine code does not raise generic exceptions for expected failure modes.
Each one maps to a domain exception with a clear meaning so callers can
decide between "report", "call again" and "show a specific diagnostic".
"""

from __future__ import annotations

from enum import IntEnum


class CalmBackupError(RuntimeError):
    """Base exception for all calmbackup domain failures."""


class BackupError(CalmBackupError):
    """Raised when a backup operation cannot be performed."""


class StagingError(BackupError):
    """Raised when a staging request is invalid (unsafe path, symlink source)."""


class StagingIOError(StagingError):
    """Raised when staging a file or committing a staging area fails on I/O."""


class SectionExistsError(StagingError):
    """Raised when a commit targets a section that already exists."""


class BackupTimeoutError(CalmBackupError):
    """
    Raised when the time budget of a backup ran out at a phase boundary.

    Nothing is corrupted when this is raised. The caller is expected to call
    the backup again with a fresh budget; committed sections are skipped.
    """


class BackupRecordError(CalmBackupError):
    """Raised when a persisted backup record is unreadable or malformed."""


class RegistryError(CalmBackupError):
    """Raised for unknown storage/engine identifiers."""


class SafetyViolationError(CalmBackupError):
    """Raised when an operation is blocked by path safety policy."""


class RestoreReason(IntEnum):
    """
    Reason codes carried by :class:`RestoreError`.

    These values are a stable external contract.
    """

    OTHER = 0
    CURRUPTED_DATA = 1
    MISMATCHED_DATA_VERSION = 2


class RestoreError(CalmBackupError):
    """
    Raised when a restore cannot be validated or performed.

    Attributes
    ----------
    engine_id:
        Identifier of the engine that raised the error.
    reason:
        Machine-readable reason code.
    """

    def __init__(self, engine_id: str, reason: RestoreReason, message: str) -> None:
        super().__init__(message)
        self.engine_id = engine_id
        self.reason = reason

    @property
    def message(self) -> str:
        """Return the human-readable message."""
        return str(self)


class MissingEnginesError(RestoreError):
    """Raised when a backup uses engines that are not registered; `engine_id` lists them."""

    def __init__(self, engine_ids: list[str]) -> None:
        super().__init__(
            ",".join(engine_ids),
            RestoreReason.OTHER,
            f"Backup engines not available: {', '.join(engine_ids)}",
        )
