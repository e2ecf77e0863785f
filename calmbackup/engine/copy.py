"""
Recursive directory copy into a staging area.

Policy
------
- Symlinks are skipped, files and directories alike. They might point
  anywhere and there is no clear restore strategy for them.
- Enumeration order is deterministic: directory names and file names are sorted.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from calmbackup.errors import StagingIOError
from calmbackup.staging import StagingArea

logger = logging.getLogger(__name__)


def _raise_listing_error(exc: OSError) -> None:
    raise StagingIOError(f"Cannot list directory {exc.filename}: {exc!s}") from exc


def backup_directory(source: Path, staging: StagingArea, destination: str = "") -> list[str]:
    """
    Stage every regular file under `source`, preserving relative structure.

    Parameters
    ----------
    source:
        Directory to copy. A missing directory stages nothing.
    staging:
        Staging area receiving the files.
    destination:
        Prefix inside the staging area ('' for its root).

    Returns
    -------
    list[str]
        Staged paths relative to the staging root, in copy order.

    Raises
    ------
    StagingIOError
        If a directory under `source` cannot be listed.
    StagingError
        If a file cannot be staged.
    """
    if not source.is_dir() or source.is_symlink():
        return []

    prefix = destination.strip("/")
    staged: list[str] = []

    for directory_path, directory_names, file_names in os.walk(
        source, topdown=True, onerror=_raise_listing_error, followlinks=False
    ):
        current = Path(directory_path)
        directory_names[:] = sorted(name for name in directory_names if not (current / name).is_symlink())
        file_names.sort()

        for file_name in file_names:
            absolute_path = current / file_name
            if absolute_path.is_symlink():
                logger.debug("Skipping symlink %s", absolute_path)
                continue
            if not absolute_path.is_file():
                continue

            relative = absolute_path.relative_to(source).as_posix()
            target = f"{prefix}/{relative}" if prefix else relative
            staging.copy_file(absolute_path, target)
            staged.append(target)

    return staged
