"""
Staging areas: append-only scratch space committed atomically into a section.

A staging area accumulates files for exactly one destination section. Nothing
is visible in the destination until `commit()` transfers everything at once.

Lifecycle
---------
- open: `copy_file` and `write_content` add files.
- committed: terminal. Further writes are logged and ignored, and a second
  `commit()` is a no-op.
- abandoned: never committed. Scratch files are removed when the `with` block
  exits (normally or by exception) or, for instances that are simply dropped,
  when the object is garbage collected or the interpreter exits.

Cleanup is best effort and never raises.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
import weakref
from pathlib import Path
from types import TracebackType
from typing import Protocol

from calmbackup.errors import SafetyViolationError, SectionExistsError, StagingError, StagingIOError
from calmbackup.paths import safe_relative_path

logger = logging.getLogger(__name__)


class StagingArea(Protocol):
    """Capability interface of a staging area bound to one destination section."""

    @property
    def committed(self) -> bool:
        """Return True once the staged content was committed."""
        ...

    def copy_file(self, source_path: Path, dest_relative_path: str) -> None:
        """Stage a copy of an existing regular file."""
        ...

    def write_content(self, dest_relative_path: str, content: bytes) -> None:
        """Stage generated content."""
        ...

    def commit(self) -> None:
        """Transfer all staged content into the destination section."""
        ...

    def cleanup(self) -> None:
        """Remove scratch resources. Never raises."""
        ...

    def __enter__(self) -> StagingArea: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


def _remove_scratch(scratch_root: Path) -> None:
    """Best-effort removal of a scratch directory."""
    try:
        shutil.rmtree(scratch_root)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Could not remove staging scratch %s: %s", scratch_root, exc)


class LocalStagingArea:
    """
    Staging area backed by a scratch directory on the local filesystem.

    Parameters
    ----------
    work_root:
        Directory under which a fresh, uniquely named scratch directory is
        created. It should live on the same filesystem as `destination` so the
        commit rename is atomic.
    destination:
        Absolute path of the section directory created on commit.
    """

    def __init__(self, *, work_root: Path, destination: Path) -> None:
        self._destination = destination
        self._scratch_root = work_root / f"stage-{uuid.uuid4().hex}"
        self._committed = False
        try:
            self._scratch_root.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise StagingIOError(f"Failed to create staging directory {self._scratch_root}: {exc!s}") from exc

        # Runs on garbage collection or interpreter exit if nobody committed
        # or cleaned up explicitly.
        self._finalizer = weakref.finalize(self, _remove_scratch, self._scratch_root)

    @property
    def committed(self) -> bool:
        """Return True once the staged content was committed."""
        return self._committed

    @property
    def scratch_root(self) -> Path:
        """Return the scratch directory holding staged files."""
        return self._scratch_root

    @property
    def destination(self) -> Path:
        """Return the section directory this staging area commits into."""
        return self._destination

    def copy_file(self, source_path: Path, dest_relative_path: str) -> None:
        """
        Stage a copy of an existing regular file.

        Parameters
        ----------
        source_path:
            Absolute path of the file to copy.
        dest_relative_path:
            Path of the copy relative to the section root.

        Raises
        ------
        StagingError
            If the source is a symlink or the destination path is unsafe.
        StagingIOError
            If the copy fails.
        """
        if self._reject_after_commit(dest_relative_path):
            return

        source = Path(source_path)
        if source.is_symlink():
            raise StagingError(f"Refusing to stage symlink: {source}")

        target = self._scratch_target(dest_relative_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except OSError as exc:
            raise StagingIOError(f"Failed to copy {source} to staging: {exc!s}") from exc

    def write_content(self, dest_relative_path: str, content: bytes) -> None:
        """
        Create or overwrite a staged file with the given content.

        Raises
        ------
        StagingError
            If the destination path is unsafe.
        StagingIOError
            If the file cannot be written.
        """
        if self._reject_after_commit(dest_relative_path):
            return

        target = self._scratch_target(dest_relative_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as handle:
                handle.write(content)
        except OSError as exc:
            raise StagingIOError(f"Failed to write {dest_relative_path} to staging: {exc!s}") from exc

    def commit(self) -> None:
        """
        Rename the populated scratch directory into the destination section.

        A second call after a successful commit does nothing.

        Raises
        ------
        SectionExistsError
            If the destination section already exists.
        StagingIOError
            If the rename fails.
        """
        if self._committed:
            return

        if self._destination.exists():
            raise SectionExistsError(f"Section already exists: {self._destination}")

        try:
            self._destination.parent.mkdir(parents=True, exist_ok=True)
            os.rename(self._scratch_root, self._destination)
        except OSError as exc:
            raise StagingIOError(
                f"Failed to commit staging {self._scratch_root} -> {self._destination}: {exc!s}"
            ) from exc

        self._committed = True
        logger.info("Committed section %s", self._destination)
        self.cleanup()

    def cleanup(self) -> None:
        """Remove scratch resources. Never raises."""
        # Detaching makes the finalizer run at most once.
        self._finalizer()

    def __enter__(self) -> LocalStagingArea:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self._committed:
            self.cleanup()

    def _reject_after_commit(self, dest_relative_path: str) -> bool:
        if not self._committed:
            return False
        logger.warning(
            "Attempt to add %s to a staging area after it was committed to %s; ignored.",
            dest_relative_path,
            self._destination,
        )
        return True

    def _scratch_target(self, dest_relative_path: str) -> Path:
        try:
            relative = safe_relative_path(dest_relative_path)
        except SafetyViolationError as exc:
            raise StagingError(str(exc)) from exc
        return self._scratch_root.joinpath(*relative.parts)
