from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import pytest

import calmbackup.manager as manager_module
from calmbackup.clock import FixedClock, SteppingClock
from calmbackup.credentials import DirectWriteCredentials, WriteCredentials
from calmbackup.engine.core import CoreBackupEngine
from calmbackup.errors import BackupTimeoutError, RegistryError, RestoreError, RestoreReason
from calmbackup.manager import BackupManager
from calmbackup.storage import BackupStorage, LocalBackupStorage
from install_fixture import build_standard_install, make_installation

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@dataclass
class RecordingEngine:
    """Engine double that records the calls it receives."""

    engine_id: str
    calls: list[str] = field(default_factory=list)
    reject: RestoreError | None = None

    def identifier(self) -> str:
        return self.engine_id

    def description(self) -> str:
        return f"Recording engine {self.engine_id}"

    def backup(self, storage: BackupStorage, time_budget: float) -> dict[str, Any]:
        self.calls.append("backup")
        return {"engine": self.engine_id}

    def prepare_restore(
        self,
        credentials: WriteCredentials,
        storage: BackupStorage,
        metadata: Mapping[str, Any],
        time_budget: float,
    ) -> None:
        self.calls.append(f"prepare:{metadata['engine']}")
        if self.reject is not None:
            raise self.reject

    def restore(self, credentials: WriteCredentials, storage: BackupStorage, metadata: Mapping[str, Any]) -> None:
        self.calls.append(f"restore:{metadata['engine']}")


def _manager(tmp_path: Path, *engines: Any, **kwargs: Any) -> BackupManager:
    kwargs.setdefault("load_entry_points", False)
    kwargs.setdefault("clock", FixedClock(NOW))
    return BackupManager(storages=[LocalBackupStorage(tmp_path / "store")], engines=engines, **kwargs)


def test_duplicate_registrations_keep_first(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    first = RecordingEngine("files")
    manager = _manager(tmp_path, first)

    with caplog.at_level(logging.ERROR, logger="calmbackup.manager"):
        manager.register_engine(first)
        manager.register_engine(RecordingEngine("files"))
        manager.register_storage(LocalBackupStorage(tmp_path / "store"))
        manager.register_storage(LocalBackupStorage(tmp_path / "other"))
        manager.register_storage(LocalBackupStorage(tmp_path / "store", identifier="same-place"))

    assert manager.engine_by_id("files") is first
    assert list(manager.available_storages()) == ["default_local_storage"]
    assert "different engine" in caplog.text
    assert "different storage" in caplog.text
    assert "already used by storage" in caplog.text
    assert len(caplog.records) == 3


def test_unregister(tmp_path: Path) -> None:
    manager = _manager(tmp_path, RecordingEngine("files"))
    manager.unregister_engine("files")
    manager.unregister_storage("default_local_storage")
    manager.unregister_engine("never-registered")

    assert manager.available_engines() == {}
    assert manager.available_storages() == {}


def test_init_hooks_and_entry_points_run_after_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[list[str]] = []

    def hook(manager: BackupManager) -> None:
        seen.append(sorted(manager.available_engines()))
        manager.register_engine(RecordingEngine("from-hook"))

    class FakeEntryPoint:
        name = "extra"

        def load(self) -> Any:
            return lambda manager: manager.register_engine(RecordingEngine("from-entry-point"))

    monkeypatch.setattr(manager_module, "entry_points", lambda group: [FakeEntryPoint()])

    manager = _manager(tmp_path, RecordingEngine("default"), init_hooks=[hook], load_entry_points=True)

    assert seen == [["default"]]
    assert sorted(manager.available_engines()) == ["default", "from-entry-point", "from-hook"]


def test_create_backup_unknown_ids(tmp_path: Path) -> None:
    manager = _manager(tmp_path, RecordingEngine("files"))

    with pytest.raises(RegistryError):
        manager.create_backup("d", "nope", 10, "files")
    with pytest.raises(RegistryError):
        manager.create_backup("d", "default_local_storage", 10, "missing")


def test_create_backup_stores_record_for_all_engines(tmp_path: Path) -> None:
    a, b = RecordingEngine("a"), RecordingEngine("b")
    manager = _manager(tmp_path, a, b)

    record = manager.create_backup("weekly", "default_local_storage", 10)

    assert record.backup_engines == ("a", "b")
    assert record.time_created == int(NOW.timestamp())
    assert record.engines_data() == {"a": {"engine": "a"}, "b": {"engine": "b"}}
    assert [r.unique_id for r in manager.existing_backups()] == [record.unique_id]
    assert manager.backup_by_id(record.unique_id) == record
    assert manager.backup_by_id("nope") is None


def test_timed_out_backup_writes_no_record_and_resumes(tmp_path: Path) -> None:
    paths, db = build_standard_install(tmp_path)
    installation = make_installation(paths, db)
    storage = LocalBackupStorage(tmp_path / "store")

    slow = BackupManager(
        storages=[storage],
        engines=[CoreBackupEngine(installation, clock=SteppingClock(start=NOW))],
        load_entry_points=False,
        clock=SteppingClock(start=NOW),
    )
    with pytest.raises(BackupTimeoutError):
        slow.create_backup("upgrade", "default_local_storage", 2, "core")
    assert slow.existing_backups() == []

    fast = BackupManager(
        storages=[storage],
        engines=[CoreBackupEngine(installation, clock=FixedClock(NOW))],
        load_entry_points=False,
        clock=FixedClock(NOW),
    )
    record = fast.create_backup("upgrade", "default_local_storage", 60, "core")

    assert record.backup_engines == ("core",)
    assert record.engines_data()["core"]["version"] == "1.2.3"


def test_existing_backups_across_storages_newest_first(tmp_path: Path) -> None:
    first = LocalBackupStorage(tmp_path / "one", identifier="one")
    second = LocalBackupStorage(tmp_path / "two", identifier="two")
    old = first.store_backup(description="old", time_created=1, engines_data={"x": {}})
    new = second.store_backup(description="new", time_created=2, engines_data={"x": {}})

    manager = BackupManager(storages=[first, second], load_entry_points=False)

    assert [r.unique_id for r in manager.existing_backups()] == [new.unique_id, old.unique_id]


def test_delete_backup(tmp_path: Path) -> None:
    manager = _manager(tmp_path, RecordingEngine("a"))
    record = manager.create_backup("d", "default_local_storage", 10)

    manager.delete_backup(record.unique_id)

    assert manager.existing_backups() == []
    with pytest.raises(RegistryError):
        manager.delete_backup(record.unique_id)


def test_restore_validates_every_engine_before_restoring(tmp_path: Path) -> None:
    a, b = RecordingEngine("a"), RecordingEngine("b")
    manager = _manager(tmp_path, a, b)
    record = manager.create_backup("d", "default_local_storage", 10)

    manager.restore_backup(record.unique_id, DirectWriteCredentials(), 10)

    assert a.calls == ["backup", "prepare:a", "restore:a"]
    assert b.calls == ["backup", "prepare:b", "restore:b"]


def test_restore_stops_when_any_engine_rejects(tmp_path: Path) -> None:
    a = RecordingEngine("a")
    b = RecordingEngine("b", reject=RestoreError("b", RestoreReason.CURRUPTED_DATA, "bad"))
    manager = _manager(tmp_path, a, b)
    record = manager.create_backup("d", "default_local_storage", 10)

    with pytest.raises(RestoreError):
        manager.restore_backup(record.unique_id, DirectWriteCredentials(), 10)

    assert a.calls == ["backup", "prepare:a"]


def test_restore_with_missing_engine(tmp_path: Path) -> None:
    manager = _manager(tmp_path, RecordingEngine("a"), RecordingEngine("b"))
    record = manager.create_backup("d", "default_local_storage", 10)
    manager.unregister_engine("b")

    with pytest.raises(RestoreError) as info:
        manager.restore_backup(record.unique_id, DirectWriteCredentials(), 10)

    assert info.value.reason == RestoreReason.OTHER
    assert info.value.engine_id == "b"
