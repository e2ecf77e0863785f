"""
Write credentials: the capability used by restore to modify the live tree.

Restore never writes into the installation directly. It goes through a
`WriteCredentials` object so callers can decide how (and whether) files are
written, e.g. through a privileged helper or a remote file transport.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from calmbackup.errors import SafetyViolationError, StagingIOError
from calmbackup.paths import assert_within

_TEMP_SUFFIX = ".calmbackup_tmp"


class WriteCredentials(Protocol):
    """Capability to create directories and files in the live installation."""

    def make_directory(self, path: Path) -> None:
        """Create a directory and its missing parents."""
        ...

    def write_file(self, path: Path, content: bytes) -> None:
        """Create or overwrite a file with the given content."""
        ...


@dataclass(frozen=True, slots=True)
class DirectWriteCredentials:
    """
    Writes directly to the local filesystem.

    Attributes
    ----------
    allowed_root:
        When set, every write must resolve inside this directory.
    """

    allowed_root: Path | None = None

    def _check(self, path: Path) -> None:
        if self.allowed_root is not None:
            assert_within(self.allowed_root, path, purpose="restore write")

    def make_directory(self, path: Path) -> None:
        """
        Create a directory and its missing parents.

        Raises
        ------
        SafetyViolationError
            If the path is outside the allowed root.
        StagingIOError
            If the directory cannot be created.
        """
        self._check(path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StagingIOError(f"Failed to create directory {path}: {exc!s}") from exc

    def write_file(self, path: Path, content: bytes) -> None:
        """
        Write a file atomically by writing a temp file then renaming it.

        Raises
        ------
        SafetyViolationError
            If the path is outside the allowed root.
        StagingIOError
            If the file cannot be written.
        """
        self._check(path)
        if path.is_symlink():
            raise SafetyViolationError(f"Refusing to write through a symlink: {path}")

        temp_path = path.with_name(path.name + _TEMP_SUFFIX)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, path)
        except OSError as exc:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise StagingIOError(f"Failed to write {path}: {exc!s}") from exc
