"""
Backup storages: named durable locations holding sections and backup records.

A storage is a capability interface, not a base class. The local filesystem
implementation is the only one shipped; other backends implement the same
protocol independently.

Local layout
------------
::

    <root>/
        core/<version>/...
        themes/<slug>/<version>/...
        plugins/<file-or-dir>/<version>/...
        mu-plugins/<ts>/  languages/<ts>/  dropins/<ts>/  root_directory/<ts>/
        db/options/<ts>/<site-id>-options.json
        runs/<unique_id>.json          run payload (per-engine metadata)
        meta-<time>-<unique_id>.json   backup record
        .staging/                      scratch area for uncommitted sections
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Protocol

from calmbackup.errors import BackupRecordError, SafetyViolationError, StagingError, StagingIOError
from calmbackup.json_store import read_json_object, write_json_atomic
from calmbackup.paths import safe_relative_path
from calmbackup.records import BackupRecord, new_record_payload, new_unique_id
from calmbackup.staging import LocalStagingArea, StagingArea

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_STORAGE_ID = "default_local_storage"
STAGING_DIRECTORY_NAME = ".staging"
RUNS_DIRECTORY_NAME = "runs"
RECORD_GLOB = "meta-*.json"


class BackupStorage(Protocol):
    """Capability interface of a backup storage."""

    def identifier(self) -> str:
        """Return the unique, stable identifier of the storage."""
        ...

    def description(self) -> str:
        """Return a human-readable description."""
        ...

    def location(self) -> str:
        """Return the physical location; distinct storages never share one."""
        ...

    def section_exists(self, relative_path: str) -> bool:
        """Return True if a committed section exists at `relative_path`."""
        ...

    def open_staging(self, relative_path: str) -> StagingArea:
        """Allocate a fresh staging area bound to the section `relative_path`."""
        ...

    def list_backups(self) -> list[BackupRecord]:
        """Return the readable backup records, newest first."""
        ...

    def store_backup(
        self,
        *,
        description: str,
        time_created: int,
        engines_data: Mapping[str, Any],
    ) -> BackupRecord:
        """Persist the run payload and a record describing it."""
        ...

    def delete_backup(self, record: BackupRecord) -> None:
        """Remove a backup record (sections are shared and kept)."""
        ...

    def section_files(self, section: str) -> list[str]:
        """Return the files of a section, relative to the section, sorted."""
        ...

    def read_file(self, relative_path: str) -> bytes:
        """Return the content of a file relative to the storage root."""
        ...


class LocalBackupStorage:
    """
    Storage rooted at a directory reachable through normal file paths.

    Parameters
    ----------
    root:
        Root directory of the storage. Created lazily.
    identifier:
        Identifier used to register the storage. Distinct storages must use
        distinct identifiers and distinct roots.
    """

    def __init__(self, root: Path, identifier: str = DEFAULT_LOCAL_STORAGE_ID) -> None:
        self._root = Path(root).expanduser().absolute()
        self._id = identifier

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LocalBackupStorage):
            return NotImplemented
        return self._id == other._id and self._root == other._root

    def __hash__(self) -> int:
        return hash((self._id, self._root))

    def __repr__(self) -> str:
        return f"LocalBackupStorage(root={str(self._root)!r}, identifier={self._id!r})"

    @property
    def root(self) -> Path:
        """Return the storage root directory."""
        return self._root

    def identifier(self) -> str:
        """Return the storage identifier."""
        return self._id

    def description(self) -> str:
        """Return a human-readable description."""
        return f"Backups located at {self._root}"

    def location(self) -> str:
        """Return the resolved root as the physical location."""
        return str(self._root.resolve())

    def section_exists(self, relative_path: str) -> bool:
        """
        Return True if the section directory exists.

        Raises
        ------
        SafetyViolationError
            If `relative_path` would escape the storage root.
        """
        return self._section_path(relative_path).is_dir()

    def open_staging(self, relative_path: str) -> LocalStagingArea:
        """
        Allocate a staging area committing into `relative_path`.

        Raises
        ------
        StagingError
            If `relative_path` is unsafe.
        StagingIOError
            If the scratch directory cannot be created.
        """
        try:
            destination = self._section_path(relative_path)
        except SafetyViolationError as exc:
            raise StagingError(str(exc)) from exc
        return LocalStagingArea(work_root=self._root / STAGING_DIRECTORY_NAME, destination=destination)

    def list_backups(self) -> list[BackupRecord]:
        """
        Read every record file; malformed records are logged and skipped.

        Returns
        -------
        list[BackupRecord]
            Records sorted by creation time, newest first.
        """
        if not self._root.is_dir():
            return []

        records: list[BackupRecord] = []
        for meta_path in sorted(self._root.glob(RECORD_GLOB)):
            if not meta_path.is_file():
                continue
            try:
                payload = read_json_object(meta_path)
                record = BackupRecord.from_payload(payload, storage=self, meta_path=str(meta_path))
            except BackupRecordError as exc:
                logger.warning("Skipping backup record %s: %s", meta_path, exc)
                continue
            records.append(record)

        records.sort(key=lambda r: (r.time_created, r.unique_id), reverse=True)
        return records

    def store_backup(
        self,
        *,
        description: str,
        time_created: int,
        engines_data: Mapping[str, Any],
    ) -> BackupRecord:
        """
        Write the run payload and then the record referencing it.

        The payload is written first so a record never references a missing
        payload.

        Raises
        ------
        StagingIOError
            If either file cannot be written.
        """
        unique_id = new_unique_id()
        backup_file = f"{RUNS_DIRECTORY_NAME}/{unique_id}.json"
        write_json_atomic(self._root / RUNS_DIRECTORY_NAME / f"{unique_id}.json", dict(engines_data))

        payload = new_record_payload(
            description=description,
            time_created=time_created,
            engine_ids=list(engines_data.keys()),
            backup_file=backup_file,
            unique_id=unique_id,
        )
        meta_path = self._root / f"meta-{int(time_created)}-{unique_id}.json"
        write_json_atomic(meta_path, payload)
        return BackupRecord.from_payload(payload, storage=self, meta_path=str(meta_path))

    def delete_backup(self, record: BackupRecord) -> None:
        """
        Delete a record file and its run payload.

        Sections are left in place: other backups may share them.

        Raises
        ------
        StagingIOError
            If the record file cannot be removed.
        """
        meta_path = Path(record.meta_path)
        try:
            meta_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StagingIOError(f"Failed to delete backup record {meta_path}: {exc!s}") from exc

        try:
            self._file_path(record.backup_file).unlink(missing_ok=True)
        except (OSError, SafetyViolationError) as exc:
            logger.warning("Could not remove run payload %s: %s", record.backup_file, exc)

    def section_files(self, section: str) -> list[str]:
        """
        Return all regular files of a section as '/'-separated relative paths.

        Raises
        ------
        FileNotFoundError
            If the section does not exist.
        """
        section_root = self._section_path(section)
        if not section_root.is_dir():
            raise FileNotFoundError(f"Section does not exist: {section}")

        files: list[str] = []
        for path in section_root.rglob("*"):
            if path.is_file() and not path.is_symlink():
                files.append(path.relative_to(section_root).as_posix())
        return sorted(files)

    def read_file(self, relative_path: str) -> bytes:
        """
        Return the content of a file relative to the storage root.

        Raises
        ------
        OSError
            If the file cannot be read.
        """
        return self._file_path(relative_path).read_bytes()

    def _section_path(self, relative_path: str) -> Path:
        return self._file_path(relative_path)

    def _file_path(self, relative_path: str) -> Path:
        relative = safe_relative_path(relative_path)
        return self._root.joinpath(*relative.parts)
