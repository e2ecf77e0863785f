"""
Options source and site enumerator.

Options are the key/value configuration rows of a site. The backup engine
consumes them only through the `OptionsSource` and `SiteEnumerator`
capabilities; `SqliteOptionsStore` implements both over a SQLite database
using the conventional table layout:

- ``<prefix>options`` holds the options of site 1.
- ``<prefix><id>_options`` holds the options of site ``<id>`` on a
  multi-site installation.
- ``<prefix>blogs`` lists the site ids (``blog_id``) when present.

Threading
---------
Connections are opened per call and never shared across threads.
"""

from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

from calmbackup.errors import BackupError
from calmbackup.json_store import dumps_compact

MAIN_SITE_ID = 1

# SQL ``LIKE '_%transient_%'``: at least one character before "transient" and
# at least one after it.
_TRANSIENT_PATTERN = re.compile(r"^.+transient.+$", re.IGNORECASE | re.DOTALL)
_TABLE_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9_]*$")


@dataclass(frozen=True, slots=True)
class OptionRow:
    """A single option: name, serialized value and autoload flag."""

    name: str
    value: str
    autoload: str = "yes"


class OptionsSource(Protocol):
    """Read and write access to the options of a site."""

    def read_options(self, site_id: int) -> list[OptionRow]:
        """Return every option row of the site."""
        ...

    def write_options(self, site_id: int, rows: Sequence[OptionRow]) -> None:
        """Insert or replace the given option rows of the site."""
        ...


class SiteEnumerator(Protocol):
    """Enumerates the sites of an installation."""

    def site_ids(self) -> list[int]:
        """Return the site ids, ascending."""
        ...


def is_backed_up_option(name: str) -> bool:
    """
    Return True if an option belongs in a backup.

    Transients, widget placement and user role definitions are environment
    specific and are excluded.
    """
    if _TRANSIENT_PATTERN.match(name):
        return False
    if name == "sidebars_widgets":
        return False
    if name.startswith("widget_"):
        return False
    if name.endswith("user_roles"):
        return False
    return True


def serialize_options(rows: Iterable[OptionRow]) -> bytes:
    """
    Serialize option rows into the compact backup document.

    Each row becomes ``{"n": name, "v": value, "a": autoload}``.
    """
    return dumps_compact([{"n": row.name, "v": row.value, "a": row.autoload} for row in rows])


def deserialize_options(content: bytes) -> list[OptionRow]:
    """
    Parse a backup options document.

    Raises
    ------
    ValueError
        If the document is not a list of ``{"n", "v", "a"}`` objects.
    """
    payload: Any = json.loads(content.decode("utf-8"))
    if not isinstance(payload, list):
        raise ValueError("Options document must be a JSON array.")

    rows: list[OptionRow] = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("n"), str):
            raise ValueError(f"Malformed option entry: {item!r}")
        value = item.get("v", "")
        autoload = item.get("a", "yes")
        rows.append(OptionRow(name=item["n"], value="" if value is None else str(value), autoload=str(autoload)))
    return rows


def options_file_name(site_id: int) -> str:
    """Return the name of the backup document holding a site's options."""
    return f"{int(site_id)}-options.json"


@dataclass(slots=True)
class SqliteOptionsStore:
    """
    Options source and site enumerator backed by a SQLite database.

    Parameters
    ----------
    db_path:
        Path of the database file.
    table_prefix:
        Prefix of the installation tables.
    """

    db_path: Path
    table_prefix: str = "wp_"

    def __post_init__(self) -> None:
        if not _TABLE_PREFIX_PATTERN.match(self.table_prefix):
            raise ValueError(f"Invalid table prefix: {self.table_prefix!r}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def options_table(self, site_id: int) -> str:
        """Return the options table name of a site."""
        if int(site_id) == MAIN_SITE_ID:
            return f"{self.table_prefix}options"
        return f"{self.table_prefix}{int(site_id)}_options"

    def site_ids(self) -> list[int]:
        """Return the site ids from the sites table, or only the main site."""
        blogs = f"{self.table_prefix}blogs"
        conn = self._connect()
        try:
            exists = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (blogs,)
            ).fetchone()
            if exists is None:
                return [MAIN_SITE_ID]
            rows = conn.execute(f'SELECT blog_id FROM "{blogs}" ORDER BY blog_id').fetchall()
        except sqlite3.Error as exc:
            raise BackupError(f"Failed to enumerate sites in {self.db_path}: {exc!s}") from exc
        finally:
            conn.close()

        ids = [int(r["blog_id"]) for r in rows]
        return ids or [MAIN_SITE_ID]

    def read_options(self, site_id: int) -> list[OptionRow]:
        """
        Return every option row of a site, ordered by name.

        Raises
        ------
        BackupError
            If the options table cannot be read.
        """
        table = self.options_table(site_id)
        conn = self._connect()
        try:
            rows = conn.execute(
                f'SELECT option_name, option_value, autoload FROM "{table}" ORDER BY option_name'
            ).fetchall()
        except sqlite3.Error as exc:
            raise BackupError(f"Failed to read options of site {site_id}: {exc!s}") from exc
        finally:
            conn.close()

        return [
            OptionRow(
                name=str(r["option_name"]),
                value="" if r["option_value"] is None else str(r["option_value"]),
                autoload=str(r["autoload"]),
            )
            for r in rows
        ]

    def write_options(self, site_id: int, rows: Sequence[OptionRow]) -> None:
        """
        Insert or replace option rows of a site in a single transaction.

        Raises
        ------
        BackupError
            If the rows cannot be written.
        """
        table = self.options_table(site_id)
        conn = self._connect()
        try:
            with conn:
                conn.executemany(
                    f'INSERT OR REPLACE INTO "{table}" (option_name, option_value, autoload) VALUES (?, ?, ?)',
                    [(row.name, row.value, row.autoload) for row in rows],
                )
        except sqlite3.Error as exc:
            raise BackupError(f"Failed to write options of site {site_id}: {exc!s}") from exc
        finally:
            conn.close()
