from __future__ import annotations

import os
from pathlib import Path

import pytest

from calmbackup.headers import parse_headers, read_file_headers
from calmbackup.inventory import discover_plugins, discover_themes
from calmbackup.paths import InstallPaths
from install_fixture import plugin_php, theme_style, write_file


def test_parse_headers_reads_comment_block() -> None:
    text = "<?php\n/**\n * Plugin Name: Demo */\n * version: 3.1\n"
    headers = parse_headers(text, ("Plugin Name", "Version", "Author"))

    assert headers == {"Plugin Name": "Demo", "Version": "3.1", "Author": ""}


def test_read_file_headers_only_reads_leading_bytes(tmp_path: Path) -> None:
    path = write_file(tmp_path / "big.php", "<?php\n" + "//" + "x" * 9000 + "\n// Version: 9\n")
    assert read_file_headers(path, ("Version",)) == {"Version": ""}


def test_read_file_headers_missing_file(tmp_path: Path) -> None:
    assert read_file_headers(tmp_path / "nope.php", ("Version",)) == {"Version": ""}


def _paths(tmp_path: Path) -> InstallPaths:
    (tmp_path / "site").mkdir(exist_ok=True)
    return InstallPaths.from_root(tmp_path / "site")


def test_discover_themes_skips_unversioned_and_broken_children(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    themes = paths.themes_directory
    write_file(themes / "parent" / "style.css", theme_style("Parent", "1.0"))
    write_file(themes / "child" / "style.css", theme_style("Child", "1.1", template="parent"))
    write_file(themes / "orphan" / "style.css", theme_style("Orphan", "1.0", template="gone"))
    write_file(themes / "noversion" / "style.css", theme_style("No Version", None))
    write_file(themes / "notatheme" / "readme.txt", "hello")

    found = discover_themes(paths)

    assert [(t.slug, t.name, t.version) for t in found] == [("child", "Child", "1.1"), ("parent", "Parent", "1.0")]


def test_discover_plugins_root_files_and_directories(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    plugins = paths.plugins_directory
    write_file(plugins / "a.php", plugin_php("A", "1.0"))
    write_file(plugins / "b.php", plugin_php("B", "2.0"))
    write_file(plugins / "helper.php", "<?php // not a plugin\n")
    write_file(plugins / "combo" / "second.php", plugin_php("Second", "1.2"))
    write_file(plugins / "combo" / "first.php", plugin_php("First", "1.1"))
    write_file(plugins / "combo" / "unversioned.php", plugin_php("Loose", None))
    write_file(plugins / "combo" / "deep" / "nested.php", plugin_php("Nested", "9.9"))
    write_file(plugins / "assets" / "style.css", "body {}")

    units = {u.key: u for u in discover_plugins(paths)}

    assert sorted(units) == ["a.php", "b.php", "combo"]
    assert units["a.php"].type == "root_file"
    assert units["a.php"].version == "1.0"
    assert units["b.php"].version == "2.0"
    assert units["combo"].type == "directory"
    assert units["combo"].version == "1.1-1.2"
    assert [f.file for f in units["combo"].files] == ["combo/first.php", "combo/second.php"]


def test_discover_plugins_directory_version_is_stable(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    write_file(paths.plugins_directory / "combo" / "z.php", plugin_php("Z", "1.2"))
    write_file(paths.plugins_directory / "combo" / "a.php", plugin_php("A", "1.1"))

    assert [u.version for u in discover_plugins(paths)] == ["1.1-1.2"]
    assert [u.version for u in discover_plugins(paths)] == ["1.1-1.2"]


def test_discovery_on_missing_roots_is_empty(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    assert discover_themes(paths) == []
    assert discover_plugins(paths) == []


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks not supported")
def test_symlinked_components_are_skipped(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    real = write_file(tmp_path / "outside" / "linked.php", plugin_php("Linked", "1.0"))
    paths.plugins_directory.mkdir(parents=True)
    (paths.plugins_directory / "linked.php").symlink_to(real)

    assert discover_plugins(paths) == []


def test_headers_may_share_the_line_with_the_php_tag(tmp_path: Path) -> None:
    assert parse_headers("<?php /* Plugin Name: One Liner */\n", ("Plugin Name",)) == {"Plugin Name": "One Liner"}

    paths = _paths(tmp_path)
    write_file(paths.plugins_directory / "solo.php", "<?php /* Plugin Name: Solo\nVersion: 0.5 */\n")

    units = discover_plugins(paths)

    assert [(u.key, u.version) for u in units] == [("solo.php", "0.5")]
    assert units[0].files[0].name == "Solo"
