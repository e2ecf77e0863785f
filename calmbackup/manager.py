"""
Backup manager: the registry of storages and engines and the run orchestrator.

Registration
------------
Storages and engines are keyed by identifier. Registering the same object
twice is a no-op. A different object under an identifier already in use, or
a second storage on an already used location, is logged as an error and
ignored; the first registration wins.

Extension point
---------------
After registering its defaults, the manager calls every init hook with
itself: the callables passed as ``init_hooks`` and every entry point in the
``calmbackup.manager_init`` group. Hooks typically register extra storages
and engines.
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any, Callable, Iterable, Sequence

from calmbackup.clock import Clock, SystemClock, deadline_after, seconds_left, throw_if_out_of_time, unix_time
from calmbackup.credentials import WriteCredentials
from calmbackup.engine.base import BackupEngine
from calmbackup.errors import BackupRecordError, MissingEnginesError, RegistryError, RestoreError, RestoreReason
from calmbackup.records import BackupRecord
from calmbackup.storage import BackupStorage

logger = logging.getLogger(__name__)

MANAGER_INIT_GROUP = "calmbackup.manager_init"

InitHook = Callable[["BackupManager"], None]


class BackupManager:
    """
    Coordinates backups across registered storages and engines.

    Parameters
    ----------
    storages:
        Storages registered at construction.
    engines:
        Engines registered at construction.
    init_hooks:
        Callables run with the manager after the defaults are registered.
    load_entry_points:
        Also run hooks from the ``calmbackup.manager_init`` entry point group.
    clock:
        Time source for run deadlines and record timestamps.
    """

    def __init__(
        self,
        *,
        storages: Iterable[BackupStorage] = (),
        engines: Iterable[BackupEngine] = (),
        init_hooks: Sequence[InitHook] = (),
        load_entry_points: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self._clock: Clock = clock or SystemClock()
        self._storages: dict[str, BackupStorage] = {}
        self._engines: dict[str, BackupEngine] = {}

        for storage in storages:
            self.register_storage(storage)
        for engine in engines:
            self.register_engine(engine)

        for hook in init_hooks:
            hook(self)
        if load_entry_points:
            for entry_point in entry_points(group=MANAGER_INIT_GROUP):
                logger.debug("Running manager init hook %s", entry_point.name)
                entry_point.load()(self)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_storage(self, storage: BackupStorage) -> None:
        """Register a storage; conflicting registrations are logged and ignored."""
        storage_id = storage.identifier()
        existing = self._storages.get(storage_id)
        if existing is not None:
            if existing is not storage and existing != storage:
                logger.error("A different storage is already registered with identifier %r", storage_id)
            return

        location = storage.location()
        for other in self._storages.values():
            if other.location() == location:
                logger.error(
                    "Storage %r uses location %s already used by storage %r",
                    storage_id,
                    location,
                    other.identifier(),
                )
                return

        self._storages[storage_id] = storage

    def unregister_storage(self, storage_id: str) -> None:
        """Remove a storage from the registry (unknown ids are ignored)."""
        self._storages.pop(storage_id, None)

    def storage_by_id(self, storage_id: str) -> BackupStorage | None:
        """Return the registered storage with the identifier, or None."""
        return self._storages.get(storage_id)

    def available_storages(self) -> dict[str, BackupStorage]:
        """Return the registered storages keyed by identifier."""
        return dict(self._storages)

    def register_engine(self, engine: BackupEngine) -> None:
        """Register an engine; conflicting registrations are logged and ignored."""
        engine_id = engine.identifier()
        existing = self._engines.get(engine_id)
        if existing is not None:
            if existing is not engine:
                logger.error("A different engine is already registered with identifier %r", engine_id)
            return
        self._engines[engine_id] = engine

    def unregister_engine(self, engine_id: str) -> None:
        """Remove an engine from the registry (unknown ids are ignored)."""
        self._engines.pop(engine_id, None)

    def engine_by_id(self, engine_id: str) -> BackupEngine | None:
        """Return the registered engine with the identifier, or None."""
        return self._engines.get(engine_id)

    def available_engines(self) -> dict[str, BackupEngine]:
        """Return the registered engines keyed by identifier."""
        return dict(self._engines)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def existing_backups(self) -> list[BackupRecord]:
        """
        Return the backups of every registered storage, newest first.

        Malformed records are skipped by the storages.
        """
        records: list[BackupRecord] = []
        for storage in self._storages.values():
            records.extend(storage.list_backups())
        records.sort(key=lambda r: (r.time_created, r.unique_id), reverse=True)
        return records

    def backup_by_id(self, unique_id: str) -> BackupRecord | None:
        """Return the backup with the unique id, or None."""
        for record in self.existing_backups():
            if record.unique_id == unique_id:
                return record
        return None

    def create_backup(
        self,
        description: str,
        storage_id: str,
        time_budget: float,
        *engine_ids: str,
    ) -> BackupRecord:
        """
        Run the given engines (all registered engines when none are given)
        and store a record of the backup.

        All engines share one deadline. The record is written only after every
        engine completed, so a timed-out run leaves committed sections but no
        record; calling again with the same arguments resumes it.

        Raises
        ------
        RegistryError
            If the storage or an engine is unknown.
        BackupTimeoutError
            If the time budget ran out.
        StagingError
            If an engine failed to write its sections.
        """
        storage = self._storages.get(storage_id)
        if storage is None:
            raise RegistryError(f"Unknown storage {storage_id}")

        ids = list(engine_ids) or sorted(self._engines)
        engines: list[BackupEngine] = []
        for engine_id in ids:
            engine = self._engines.get(engine_id)
            if engine is None:
                raise RegistryError(f"Unknown engine {engine_id}")
            engines.append(engine)

        deadline = deadline_after(self._clock, time_budget)
        engines_data: dict[str, Any] = {}
        for engine in engines:
            throw_if_out_of_time(deadline, self._clock)
            engines_data[engine.identifier()] = engine.backup(storage, seconds_left(self._clock, deadline))

        record = storage.store_backup(
            description=description,
            time_created=unix_time(self._clock),
            engines_data=engines_data,
        )
        logger.info("Stored backup %s in %s", record.unique_id, storage_id)
        return record

    def delete_backup(self, unique_id: str) -> None:
        """
        Delete a backup record.

        Raises
        ------
        RegistryError
            If no backup has the unique id.
        """
        record = self.backup_by_id(unique_id)
        if record is None:
            raise RegistryError(f"Unknown backup {unique_id}")
        record.storage.delete_backup(record)

    def restore_backup(
        self,
        unique_id: str,
        credentials: WriteCredentials,
        time_budget: float,
    ) -> BackupRecord:
        """
        Validate every engine's part of a backup, then restore them all.

        Raises
        ------
        RegistryError
            If no backup has the unique id.
        MissingEnginesError
            If engines used by the backup are not registered.
        RestoreError
            ``OTHER`` if the payload is unreadable, or any engine's
            validation or replay error.
        BackupTimeoutError
            If validation ran out of time.
        """
        record = self.backup_by_id(unique_id)
        if record is None:
            raise RegistryError(f"Unknown backup {unique_id}")

        missing = record.missing_engines(*self._engines)
        if missing:
            raise MissingEnginesError(missing)

        try:
            data = record.engines_data()
        except BackupRecordError as exc:
            raise RestoreError(record.engine_type(), RestoreReason.OTHER, str(exc)) from exc

        deadline = deadline_after(self._clock, time_budget)
        for engine_id in record.backup_engines:
            throw_if_out_of_time(deadline, self._clock)
            self._engines[engine_id].prepare_restore(
                credentials, record.storage, data[engine_id], seconds_left(self._clock, deadline)
            )

        for engine_id in record.backup_engines:
            self._engines[engine_id].restore(credentials, record.storage, data[engine_id])

        logger.info("Restored backup %s", unique_id)
        return record
