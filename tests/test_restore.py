from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from calmbackup.clock import FixedClock
from calmbackup.credentials import DirectWriteCredentials
from calmbackup.engine.core import CoreBackupEngine
from calmbackup.errors import RestoreError, RestoreReason, SafetyViolationError
from calmbackup.options import OptionRow, SqliteOptionsStore
from calmbackup.storage import LocalBackupStorage
from install_fixture import build_standard_install, make_installation, write_file

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_restore_replays_files_and_options(tmp_path: Path) -> None:
    paths, db = build_standard_install(tmp_path)
    engine = CoreBackupEngine(make_installation(paths, db), clock=FixedClock(NOW))
    storage = LocalBackupStorage(tmp_path / "store")
    meta = engine.backup(storage, time_budget=60)

    theme_index = paths.themes_directory / "mytheme" / "index.php"
    theme_index.write_text("<?php // damaged\n", encoding="utf-8")
    (paths.plugins_directory / "myplugin" / "lib" / "helper.php").unlink()
    (paths.admin_directory / "index.php").unlink()
    (paths.content_directory / "db.php").write_text("<?php // replaced\n", encoding="utf-8")
    write_file(paths.root_directory / "new-file.txt", "added after backup\n")
    store = SqliteOptionsStore(db_path=db)
    store.write_options(1, [OptionRow("blogname", "Changed", "yes")])

    engine.restore(DirectWriteCredentials(allowed_root=paths.root_directory), storage, meta)

    assert theme_index.read_text(encoding="utf-8") == "<?php // theme\n"
    assert (paths.plugins_directory / "myplugin" / "lib" / "helper.php").read_text(encoding="utf-8") == (
        "<?php // helper\n"
    )
    assert (paths.admin_directory / "index.php").read_text(encoding="utf-8") == "<?php // admin\n"
    assert (paths.content_directory / "db.php").read_text(encoding="utf-8") == "<?php // db dropin\n"
    assert (paths.root_directory / "new-file.txt").exists()
    assert (paths.root_directory / "extra.txt").read_text(encoding="utf-8") == "extra\n"
    assert OptionRow("blogname", "Fixture Site", "yes") in store.read_options(1)


def test_restore_validates_first(tmp_path: Path) -> None:
    paths, db = build_standard_install(tmp_path)
    engine = CoreBackupEngine(make_installation(paths, db), clock=FixedClock(NOW))
    storage = LocalBackupStorage(tmp_path / "store")
    meta = engine.backup(storage, time_budget=60)
    meta["unknown"] = {}

    with pytest.raises(RestoreError) as info:
        engine.restore(DirectWriteCredentials(), storage, meta)
    assert info.value.reason == RestoreReason.MISMATCHED_DATA_VERSION


def test_restore_outside_allowed_root_fails(tmp_path: Path) -> None:
    paths, db = build_standard_install(tmp_path)
    engine = CoreBackupEngine(make_installation(paths, db), clock=FixedClock(NOW))
    storage = LocalBackupStorage(tmp_path / "store")
    meta = engine.backup(storage, time_budget=60)
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()

    with pytest.raises(RestoreError) as info:
        engine.restore(DirectWriteCredentials(allowed_root=elsewhere), storage, meta)
    assert info.value.reason == RestoreReason.OTHER
    assert info.value.engine_id == "core"


def test_direct_credentials_write_atomically(tmp_path: Path) -> None:
    credentials = DirectWriteCredentials(allowed_root=tmp_path)
    target = tmp_path / "a" / "b.txt"

    credentials.make_directory(target.parent)
    credentials.write_file(target, b"one")
    credentials.write_file(target, b"two")

    assert target.read_bytes() == b"two"
    assert sorted(p.name for p in target.parent.iterdir()) == ["b.txt"]


def test_direct_credentials_refuse_outside_root(tmp_path: Path) -> None:
    credentials = DirectWriteCredentials(allowed_root=tmp_path / "inside")
    with pytest.raises(SafetyViolationError):
        credentials.write_file(tmp_path / "outside.txt", b"x")
