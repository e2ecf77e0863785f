"""
Installation path policy and safety gates.

This module is the single place that knows where the live installation keeps
its code and where backups are written by default:

- `InstallPaths` is the Paths provider. It is an explicit value passed to the
  engine, never a cached module-level object, so tests can point the engine at
  fixture trees.
- Relative paths that end up inside a storage (section paths, staged file
  names) go through `safe_relative_path` so nothing can escape its root.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from calmbackup.errors import SafetyViolationError

BACKUP_ROOT_ENV = "CALMBACKUP_ROOT"

CORE_ROOT_FILE_NAMES: tuple[str, ...] = (
    "index.php",
    "wp-activate.php",
    "wp-blog-header.php",
    "wp-comments-post.php",
    "wp-cron.php",
    "wp-load.php",
    "wp-login.php",
    "wp-settings.php",
    "wp-signup.php",
)

DROPIN_FILE_NAMES: tuple[str, ...] = (
    "advanced-cache.php",
    "db.php",
    "db-error.php",
    "install.php",
    "maintenance.php",
    "object-cache.php",
    "php-error.php",
    "fatal-error-handler.php",
    "sunrise.php",
    "blog-deleted.php",
    "blog-inactive.php",
    "blog-suspended.php",
)

_VERSION_PATTERN = re.compile(r"""\$calmpress_version\s*=\s*['"]([^'"]+)['"]""")
_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")


@dataclass(frozen=True, slots=True)
class InstallPaths:
    """
    Concrete resolved paths of a live installation.

    Attributes
    ----------
    root_directory:
        Installation root holding the core root files.
    admin_directory:
        Core admin code tree.
    includes_directory:
        Core library code tree.
    content_directory:
        Content root; drop-in files live directly in it.
    plugins_directory:
        Plugins root.
    mu_plugins_directory:
        Must-use plugins directory (may not exist).
    themes_directory:
        Themes root.
    languages_directory:
        Language files directory (may not exist).
    uploads_directory:
        Upload area; the default backup storage lives in a private
        subdirectory of it.
    core_root_file_names:
        Names of the core files located at the root directory.
    dropin_file_names:
        Names of the possible drop-in files in the content directory.
    """

    root_directory: Path
    admin_directory: Path
    includes_directory: Path
    content_directory: Path
    plugins_directory: Path
    mu_plugins_directory: Path
    themes_directory: Path
    languages_directory: Path
    uploads_directory: Path
    core_root_file_names: tuple[str, ...] = CORE_ROOT_FILE_NAMES
    dropin_file_names: tuple[str, ...] = DROPIN_FILE_NAMES

    @classmethod
    def from_root(cls, root: Path) -> InstallPaths:
        """
        Resolve the standard directory layout under an installation root.

        Parameters
        ----------
        root:
            Installation root directory. Must exist.

        Returns
        -------
        InstallPaths
            Paths for the standard layout.

        Raises
        ------
        SafetyViolationError
            If the root does not exist or is a filesystem root.
        """
        resolved = validate_install_root(root)
        content = resolved / "wp-content"
        return cls(
            root_directory=resolved,
            admin_directory=resolved / "wp-admin",
            includes_directory=resolved / "wp-includes",
            content_directory=content,
            plugins_directory=content / "plugins",
            mu_plugins_directory=content / "mu-plugins",
            themes_directory=content / "themes",
            languages_directory=content / "languages",
            uploads_directory=content / "uploads",
        )


def validate_install_root(root: Path) -> Path:
    """
    Validate an installation root and return its resolved absolute form.

    Raises
    ------
    SafetyViolationError
        If the path does not exist, is not a directory, or is a filesystem root.
    """
    candidate = Path(root).expanduser()
    try:
        resolved = candidate.resolve(strict=True)
    except FileNotFoundError as exc:
        raise SafetyViolationError(f"Installation root does not exist: {candidate}") from exc

    if not resolved.is_dir():
        raise SafetyViolationError(f"Installation root is not a directory: {resolved}")
    if len(resolved.parts) <= 1:
        raise SafetyViolationError(f"Refusing to use filesystem root as installation: {resolved}")
    return resolved


def default_backup_root(paths: InstallPaths) -> Path:
    """
    Resolve the default local backup root.

    Preference order:
    1) ``CALMBACKUP_ROOT`` if set
    2) ``<uploads>/.private/backup``
    """
    override = os.environ.get(BACKUP_ROOT_ENV)
    if override:
        return Path(override).expanduser()
    return paths.uploads_directory / ".private" / "backup"


def read_core_version(paths: InstallPaths) -> str:
    """
    Read the core version declared in ``<includes>/version.php``.

    Raises
    ------
    SafetyViolationError
        If the version file is missing or carries no version assignment.
    """
    version_file = paths.includes_directory / "version.php"
    try:
        text = version_file.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise SafetyViolationError(f"Cannot read core version file: {version_file} ({exc!s})") from exc

    match = _VERSION_PATTERN.search(text)
    if match is None:
        raise SafetyViolationError(f"No core version declared in {version_file}")
    return match.group(1).strip()


def safe_relative_path(value: str) -> PurePosixPath:
    """
    Normalize a storage-relative path and reject anything that could escape.

    Parameters
    ----------
    value:
        A '/'-separated relative path. Backslashes are normalized to '/'.

    Returns
    -------
    PurePosixPath
        The normalized relative path.

    Raises
    ------
    SafetyViolationError
        If the path is empty, absolute, carries a drive hint, or contains '..'.
    """
    cleaned = str(value).strip().replace("\\", "/")
    if not cleaned.strip("/"):
        raise SafetyViolationError("Relative path must not be empty.")
    if cleaned.startswith("/"):
        raise SafetyViolationError(f"Relative path must not be absolute: {value!r}")
    if _DRIVE_PATTERN.match(cleaned):
        raise SafetyViolationError(f"Relative path must not contain a drive hint: {value!r}")

    path = PurePosixPath(cleaned)
    if any(part == ".." for part in path.parts):
        raise SafetyViolationError(f"Relative path must not contain '..': {value!r}")
    return path


def assert_within(base: Path, candidate: Path, *, purpose: str) -> None:
    """Ensure `candidate` is within `base` after resolution."""
    try:
        candidate.resolve().relative_to(base.resolve())
    except ValueError as exc:
        raise SafetyViolationError(
            f"Unsafe path for {purpose}: {candidate} is not within {base}"
        ) from exc
