"""
Helpers building fixture installations on disk for tests.

The standard fixture holds:

- core version 1.2.3 with an admin and an includes tree and two core root files
- one theme ``mytheme`` at version 1.0
- one plugin directory ``myplugin`` at version 2.0
- no mu-plugins and no languages directory
- two drop-ins (``db.php`` and ``object-cache.php``)
- one extra root file (``extra.txt``)
- an options database with one normal option and one transient
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from calmbackup.installation import Installation
from calmbackup.options import SqliteOptionsStore
from calmbackup.paths import InstallPaths

CORE_VERSION = "1.2.3"


def write_file(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def theme_style(name: str, version: str | None, template: str | None = None) -> str:
    lines = ["/*", f"Theme Name: {name}"]
    if version is not None:
        lines.append(f"Version: {version}")
    if template is not None:
        lines.append(f"Template: {template}")
    lines.append("*/")
    return "\n".join(lines) + "\n"


def plugin_php(name: str, version: str | None) -> str:
    lines = ["<?php", "/**", f" * Plugin Name: {name}"]
    if version is not None:
        lines.append(f" * Version: {version}")
    lines.append(" */")
    return "\n".join(lines) + "\n"


def create_options_db(db_path: Path, rows: list[tuple[str, str, str]], *, prefix: str = "wp_") -> Path:
    conn = sqlite3.connect(db_path)
    try:
        with conn:
            conn.execute(
                f"CREATE TABLE {prefix}options ("
                "option_id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "option_name TEXT NOT NULL UNIQUE, "
                "option_value TEXT NOT NULL, "
                "autoload TEXT NOT NULL DEFAULT 'yes')"
            )
            conn.executemany(
                f"INSERT INTO {prefix}options (option_name, option_value, autoload) VALUES (?, ?, ?)",
                rows,
            )
    finally:
        conn.close()
    return db_path


def build_core(root: Path, *, version: str = CORE_VERSION) -> None:
    write_file(root / "wp-includes" / "version.php", f"<?php\n$calmpress_version = '{version}';\n")
    write_file(root / "wp-includes" / "functions.php", "<?php // functions\n")
    write_file(root / "wp-admin" / "index.php", "<?php // admin\n")
    write_file(root / "wp-admin" / "includes" / "misc.php", "<?php // misc\n")
    write_file(root / "index.php", "<?php // front\n")
    write_file(root / "wp-load.php", "<?php // load\n")


def build_standard_install(tmp_path: Path) -> tuple[InstallPaths, Path]:
    """Create the standard fixture tree and options database; return its paths and database."""
    root = tmp_path / "site"
    build_core(root)

    content = root / "wp-content"
    write_file(content / "themes" / "mytheme" / "style.css", theme_style("My Theme", "1.0"))
    write_file(content / "themes" / "mytheme" / "index.php", "<?php // theme\n")
    write_file(content / "plugins" / "myplugin" / "myplugin.php", plugin_php("My Plugin", "2.0"))
    write_file(content / "plugins" / "myplugin" / "lib" / "helper.php", "<?php // helper\n")
    write_file(content / "db.php", "<?php // db dropin\n")
    write_file(content / "object-cache.php", "<?php // cache dropin\n")
    (content / "uploads").mkdir(parents=True)
    write_file(root / "extra.txt", "extra\n")

    db_path = create_options_db(
        tmp_path / "options.sqlite",
        [
            ("blogname", "Fixture Site", "yes"),
            ("_transient_feed", "cached", "no"),
        ],
    )
    return InstallPaths.from_root(root), db_path


def make_installation(paths: InstallPaths, db_path: Path, *, version: str = CORE_VERSION) -> Installation:
    store = SqliteOptionsStore(db_path=db_path)
    return Installation(paths=paths, core_version=version, options=store, sites=store)
