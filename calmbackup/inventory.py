"""
Inventory of installed themes and plugins.

Discovery is read-only and deterministic: results are sorted so repeated runs
over the same tree produce the same sections.

Policy
------
- A theme is a directory under the themes root whose ``style.css`` declares a
  ``Theme Name``. A child theme whose ``Template`` parent directory is missing
  is broken and ignored. Themes without a ``Version`` are ignored.
- A plugin is a ``*.php`` file at the plugins root or one directory below it
  declaring a ``Plugin Name``. Plugins without a ``Version`` are ignored.
- Symlinked components are skipped.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from calmbackup.headers import PLUGIN_HEADERS, THEME_HEADERS, read_file_headers
from calmbackup.paths import InstallPaths

PLUGIN_TYPE_ROOT_FILE = "root_file"
PLUGIN_TYPE_DIRECTORY = "directory"


@dataclass(frozen=True, slots=True)
class ThemeInfo:
    """
    A discovered, versioned theme.

    Attributes
    ----------
    slug:
        Name of the theme directory.
    name:
        Declared theme name.
    version:
        Declared theme version.
    path:
        Absolute path of the theme directory.
    """

    slug: str
    name: str
    version: str
    path: Path


@dataclass(frozen=True, slots=True)
class PluginFile:
    """A versioned plugin main file, relative to the plugins root."""

    file: str
    name: str
    version: str


@dataclass(frozen=True, slots=True)
class PluginUnit:
    """
    A backup unit of plugin code: a single root file or a plugin directory.

    Attributes
    ----------
    key:
        File name (root file) or directory name (directory unit).
    type:
        ``"root_file"`` or ``"directory"``.
    path:
        Absolute path of the file or directory.
    files:
        Versioned plugin files of the unit, ordered by relative file name.
    """

    key: str
    type: str
    path: Path
    files: tuple[PluginFile, ...]

    @property
    def version(self) -> str:
        """Return the unit version; directories join their file versions with '-'."""
        return "-".join(f.version for f in self.files)


def discover_themes(paths: InstallPaths) -> list[ThemeInfo]:
    """
    Enumerate the versioned, non-broken themes of an installation.

    Returns
    -------
    list[ThemeInfo]
        Themes sorted by slug.
    """
    root = paths.themes_directory
    if not root.is_dir():
        return []

    candidates: dict[str, dict[str, str]] = {}
    for entry in sorted(root.iterdir()):
        if entry.is_symlink() or not entry.is_dir():
            continue
        style = entry / "style.css"
        if style.is_symlink() or not style.is_file():
            continue
        headers = read_file_headers(style, THEME_HEADERS)
        if not headers["Theme Name"]:
            continue
        candidates[entry.name] = headers

    themes: list[ThemeInfo] = []
    for slug, headers in candidates.items():
        parent = headers["Template"]
        if parent and parent != slug and parent not in candidates:
            continue
        if not headers["Version"]:
            continue
        themes.append(
            ThemeInfo(slug=slug, name=headers["Theme Name"], version=headers["Version"], path=root / slug)
        )
    return themes


def _plugin_file(path: Path, relative: str) -> PluginFile | None:
    if path.is_symlink() or not path.is_file():
        return None
    headers = read_file_headers(path, PLUGIN_HEADERS)
    if not headers["Plugin Name"] or not headers["Version"]:
        return None
    return PluginFile(file=relative, name=headers["Plugin Name"], version=headers["Version"])


def discover_plugins(paths: InstallPaths) -> list[PluginUnit]:
    """
    Enumerate plugin backup units.

    Root files become one unit each. Every directory holding at least one
    versioned plugin file becomes one unit whose version joins the versions of
    its plugin files, ordered by relative file name.

    Returns
    -------
    list[PluginUnit]
        Units sorted by key.
    """
    root = paths.plugins_directory
    if not root.is_dir():
        return []

    units: list[PluginUnit] = []
    for entry in sorted(root.iterdir()):
        if entry.is_symlink():
            continue

        if entry.is_file() and entry.suffix == ".php":
            found = _plugin_file(entry, entry.name)
            if found is not None:
                units.append(PluginUnit(key=entry.name, type=PLUGIN_TYPE_ROOT_FILE, path=entry, files=(found,)))
            continue

        if not entry.is_dir():
            continue

        files: list[PluginFile] = []
        for child in sorted(entry.glob("*.php")):
            found = _plugin_file(child, f"{entry.name}/{child.name}")
            if found is not None:
                files.append(found)
        if files:
            files.sort(key=lambda f: f.file)
            units.append(PluginUnit(key=entry.name, type=PLUGIN_TYPE_DIRECTORY, path=entry, files=tuple(files)))

    units.sort(key=lambda u: u.key)
    return units
