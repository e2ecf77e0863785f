"""
The live installation as seen by the core backup engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from calmbackup.options import OptionsSource, SiteEnumerator, SqliteOptionsStore
from calmbackup.paths import InstallPaths, read_core_version


@dataclass(frozen=True, slots=True)
class Installation:
    """
    Everything the core engine needs to know about an installation.

    Attributes
    ----------
    paths:
        Resolved directory layout.
    core_version:
        Version of the core code; names the core section.
    options:
        Source of the option rows.
    sites:
        Enumerator of the sites whose options are backed up.
    """

    paths: InstallPaths
    core_version: str
    options: OptionsSource
    sites: SiteEnumerator


def open_installation(
    root: Path,
    *,
    options_db: Path,
    table_prefix: str = "wp_",
    core_version: str | None = None,
) -> Installation:
    """
    Build an `Installation` for a standard layout with a SQLite options database.

    Parameters
    ----------
    root:
        Installation root directory.
    options_db:
        SQLite database holding the options tables.
    table_prefix:
        Prefix of the installation tables.
    core_version:
        Core version override. Read from the includes tree when omitted.

    Raises
    ------
    SafetyViolationError
        If the root is invalid or the core version cannot be determined.
    """
    paths = InstallPaths.from_root(root)
    version = core_version or read_core_version(paths)
    store = SqliteOptionsStore(db_path=Path(options_db), table_prefix=table_prefix)
    return Installation(paths=paths, core_version=version, options=store, sites=store)
