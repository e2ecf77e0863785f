"""
The engine capability: one independent sub-backup (e.g. code and settings).

Engines are registered with the manager by identifier. Each engine owns the
sections it writes and the shape of the metadata it returns; the manager only
stores that metadata and hands it back on restore.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from calmbackup.credentials import WriteCredentials
from calmbackup.storage import BackupStorage


class BackupEngine(Protocol):
    """Capability interface of a backup engine."""

    def identifier(self) -> str:
        """Return the unique, stable identifier of the engine."""
        ...

    def description(self) -> str:
        """Return a human-readable description."""
        ...

    def backup(self, storage: BackupStorage, time_budget: float) -> dict[str, Any]:
        """
        Back up into `storage` and return the engine metadata.

        Raises
        ------
        BackupTimeoutError
            If the budget ran out; calling again resumes the work.
        """
        ...

    def prepare_restore(
        self,
        credentials: WriteCredentials,
        storage: BackupStorage,
        metadata: Mapping[str, Any],
        time_budget: float,
    ) -> None:
        """
        Validate that `metadata` can be restored. Does not modify anything.

        Raises
        ------
        RestoreError
            If the metadata is corrupted or of an unsupported version.
        """
        ...

    def restore(
        self,
        credentials: WriteCredentials,
        storage: BackupStorage,
        metadata: Mapping[str, Any],
    ) -> None:
        """Replay a validated backup into the live installation."""
        ...
