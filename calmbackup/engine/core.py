"""
Core backup engine: the code tree and the options of an installation.

Backup phases
-------------
Phases run in a fixed order, each checked against the run deadline first:

1. core            ``core/<version>/``
2. themes          ``themes/<slug>/<version>/`` per theme
3. plugins         ``plugins/<file-or-dir>/<version>/`` per plugin unit
4. mu-plugins      ``mu-plugins/<ts>/``
5. languages       ``languages/<ts>/``
6. dropins         ``dropins/<ts>/``
7. root directory  ``root_directory/<ts>/`` (non-core files at the root)
8. options         ``db/options/<ts>/<site-id>-options.json``

Versioned sections are deduplicated: a section that already exists is reused
as-is, which is what makes a timed-out run cheap to resume. Timestamped
sections are always new; ``<ts>`` is the unix time, suffixed ``-1``, ``-2``
and so on when that section already exists.

Each phase writes into its own staging area and becomes visible only when it
commits. An exception inside a phase leaves no trace in the storage.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Mapping

from calmbackup.clock import Clock, SystemClock, deadline_after, throw_if_out_of_time, unix_time
from calmbackup.credentials import WriteCredentials
from calmbackup.engine.copy import backup_directory
from calmbackup.engine.validate import OPTIONS_FILE_PATTERN, SectionRef, ValidatedCoreBackup, validate_core_metadata
from calmbackup.errors import BackupError, CalmBackupError, RestoreError, RestoreReason
from calmbackup.installation import Installation
from calmbackup.inventory import PLUGIN_TYPE_ROOT_FILE, discover_plugins, discover_themes
from calmbackup.options import deserialize_options, is_backed_up_option, options_file_name, serialize_options
from calmbackup.staging import StagingArea
from calmbackup.storage import BackupStorage

logger = logging.getLogger(__name__)

CORE_ENGINE_ID = "core"

CORE_BACKUP_PATH = "core"
THEMES_BACKUP_PATH = "themes"
PLUGINS_BACKUP_PATH = "plugins"
MU_PLUGINS_BACKUP_PATH = "mu-plugins"
LANGUAGES_BACKUP_PATH = "languages"
DROPINS_BACKUP_PATH = "dropins"
ROOT_DIRECTORY_BACKUP_PATH = "root_directory"
OPTIONS_BACKUP_PATH = "db/options"


def _is_plain_name(value: str) -> bool:
    return bool(value) and "/" not in value and "\\" not in value and value not in (".", "..")


class CoreBackupEngine:
    """
    Backs up and restores core code, themes, plugins and site options.

    Parameters
    ----------
    installation:
        The live installation.
    clock:
        Time source for deadlines and section timestamps.
    """

    def __init__(self, installation: Installation, *, clock: Clock | None = None) -> None:
        self._installation = installation
        self._clock: Clock = clock or SystemClock()

    def identifier(self) -> str:
        return CORE_ENGINE_ID

    def description(self) -> str:
        return "Essential code and settings"

    @property
    def installation(self) -> Installation:
        """Return the installation this engine works on."""
        return self._installation

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def backup(self, storage: BackupStorage, time_budget: float) -> dict[str, Any]:
        """
        Run every backup phase and return the engine metadata.

        Parameters
        ----------
        storage:
            Destination storage.
        time_budget:
            Seconds after which no new phase or unit starts.

        Returns
        -------
        dict[str, Any]
            Metadata with the keys ``version``, ``themes``, ``plugins``,
            ``mu_plugins``, ``languages``, ``dropins``, ``root_directory``
            and ``options``.

        Raises
        ------
        BackupTimeoutError
            If the deadline passed at a phase boundary. Calling again resumes.
        StagingError
            If a phase could not stage or commit its files.
        BackupError
            If the installation cannot be read.
        """
        deadline = deadline_after(self._clock, time_budget)
        clock = self._clock

        throw_if_out_of_time(deadline, clock)
        self.backup_core(storage)

        throw_if_out_of_time(deadline, clock)
        themes = self.backup_themes(storage, deadline=deadline)

        throw_if_out_of_time(deadline, clock)
        plugins = self.backup_plugins(storage, deadline=deadline)

        throw_if_out_of_time(deadline, clock)
        mu_plugins = self.backup_mu_plugins(storage)

        throw_if_out_of_time(deadline, clock)
        languages = self.backup_languages(storage)

        throw_if_out_of_time(deadline, clock)
        dropins = self.backup_dropins(storage)

        throw_if_out_of_time(deadline, clock)
        root_directory = self.backup_root_directory(storage)

        throw_if_out_of_time(deadline, clock)
        options = self.backup_options(storage)

        logger.info("Core backup into %s complete", storage.identifier())
        return {
            "version": self._installation.core_version,
            "themes": themes,
            "plugins": plugins,
            "mu_plugins": mu_plugins,
            "languages": languages,
            "dropins": dropins,
            "root_directory": root_directory,
            "options": options,
        }

    def backup_core(self, storage: BackupStorage) -> str:
        """
        Back up the core code into ``core/<version>/``.

        The admin and includes trees are stored under their directory names,
        the core root files at the section root.

        Returns
        -------
        str
            The section path.
        """
        version = self._installation.core_version
        if not _is_plain_name(version):
            raise BackupError(f"Core version is not usable as a section name: {version!r}")

        paths = self._installation.paths
        section = f"{CORE_BACKUP_PATH}/{version}/"

        def fill(staging: StagingArea) -> None:
            backup_directory(paths.admin_directory, staging, paths.admin_directory.name)
            backup_directory(paths.includes_directory, staging, paths.includes_directory.name)
            for name in paths.core_root_file_names:
                source = paths.root_directory / name
                if source.is_file() and not source.is_symlink():
                    staging.copy_file(source, name)

        self._commit_section(storage, section, fill)
        return section

    def backup_themes(self, storage: BackupStorage, *, deadline: datetime) -> dict[str, dict[str, str]]:
        """
        Back up each versioned theme into ``themes/<slug>/<version>/``.

        Returns
        -------
        dict
            Theme slug mapped to ``{version, directory, name, directory_name}``.
        """
        meta: dict[str, dict[str, str]] = {}
        for theme in discover_themes(self._installation.paths):
            throw_if_out_of_time(deadline, self._clock)
            if not _is_plain_name(theme.version):
                logger.warning("Skipping theme %s: unusable version %r", theme.slug, theme.version)
                continue

            section = f"{THEMES_BACKUP_PATH}/{theme.slug}/{theme.version}/"
            source = theme.path
            self._commit_section(storage, section, lambda staging: backup_directory(source, staging))
            meta[theme.slug] = {
                "version": theme.version,
                "directory": section,
                "name": theme.name,
                "directory_name": theme.slug,
            }
        return meta

    def backup_plugins(self, storage: BackupStorage, *, deadline: datetime) -> dict[str, dict[str, Any]]:
        """
        Back up each plugin unit into ``plugins/<file-or-dir>/<version>/``.

        Returns
        -------
        dict
            Unit key mapped to ``{version, directory, type, data}``.
        """
        meta: dict[str, dict[str, Any]] = {}
        for unit in discover_plugins(self._installation.paths):
            throw_if_out_of_time(deadline, self._clock)
            version = unit.version
            if not _is_plain_name(version):
                logger.warning("Skipping plugin %s: unusable version %r", unit.key, version)
                continue

            section = f"{PLUGINS_BACKUP_PATH}/{unit.key}/{version}/"
            source = unit.path
            if unit.type == PLUGIN_TYPE_ROOT_FILE:
                key = unit.key
                self._commit_section(storage, section, lambda staging: staging.copy_file(source, key))
            else:
                self._commit_section(storage, section, lambda staging: backup_directory(source, staging))

            meta[unit.key] = {
                "version": version,
                "directory": section,
                "type": unit.type,
                "data": [{"file": f.file, "name": f.name, "version": f.version} for f in unit.files],
            }
        return meta

    def backup_mu_plugins(self, storage: BackupStorage) -> dict[str, str]:
        """Back up the must-use plugins directory (empty section if absent)."""
        source = self._installation.paths.mu_plugins_directory
        section = self._timestamped_section(storage, MU_PLUGINS_BACKUP_PATH)
        self._commit_section(storage, section, lambda staging: backup_directory(source, staging))
        return {"directory": section}

    def backup_languages(self, storage: BackupStorage) -> dict[str, str]:
        """Back up the languages directory (empty section if absent)."""
        source = self._installation.paths.languages_directory
        section = self._timestamped_section(storage, LANGUAGES_BACKUP_PATH)
        self._commit_section(storage, section, lambda staging: backup_directory(source, staging))
        return {"directory": section}

    def backup_dropins(self, storage: BackupStorage) -> dict[str, Any]:
        """Back up the drop-in files present in the content directory."""
        paths = self._installation.paths
        files = [
            name
            for name in paths.dropin_file_names
            if (paths.content_directory / name).is_file() and not (paths.content_directory / name).is_symlink()
        ]
        section = self._timestamped_section(storage, DROPINS_BACKUP_PATH)

        def fill(staging: StagingArea) -> None:
            for name in files:
                staging.copy_file(paths.content_directory / name, name)

        self._commit_section(storage, section, fill)
        return {"directory": section, "files": files}

    def backup_root_directory(self, storage: BackupStorage) -> dict[str, Any]:
        """Back up the regular files at the installation root that are not core files."""
        paths = self._installation.paths
        core_files = set(paths.core_root_file_names)
        files = sorted(
            entry.name
            for entry in paths.root_directory.iterdir()
            if entry.is_file() and not entry.is_symlink() and entry.name not in core_files
        )
        section = self._timestamped_section(storage, ROOT_DIRECTORY_BACKUP_PATH)

        def fill(staging: StagingArea) -> None:
            for name in files:
                staging.copy_file(paths.root_directory / name, name)

        self._commit_section(storage, section, fill)
        return {"directory": section, "files": files}

    def backup_options(self, storage: BackupStorage) -> dict[str, Any]:
        """
        Back up the options of every site, one document per site.

        Transients, widget settings and user roles are not backed up.
        """
        source = self._installation.options
        site_ids = sorted(self._installation.sites.site_ids())
        documents: dict[str, bytes] = {}
        for site_id in site_ids:
            rows = [row for row in source.read_options(site_id) if is_backed_up_option(row.name)]
            documents[options_file_name(site_id)] = serialize_options(rows)

        section = self._timestamped_section(storage, OPTIONS_BACKUP_PATH)

        def fill(staging: StagingArea) -> None:
            for name, content in documents.items():
                staging.write_content(name, content)

        self._commit_section(storage, section, fill)
        return {"directory": section, "files": list(documents)}

    def _timestamped_section(self, storage: BackupStorage, prefix: str) -> str:
        stamp = str(unix_time(self._clock))
        section = f"{prefix}/{stamp}/"
        counter = 0
        while storage.section_exists(section):
            counter += 1
            section = f"{prefix}/{stamp}-{counter}/"
        return section

    @staticmethod
    def _commit_section(
        storage: BackupStorage,
        section: str,
        fill: Callable[[StagingArea], object],
    ) -> bool:
        if storage.section_exists(section):
            logger.debug("Section %s already exists; skipped", section)
            return False
        with storage.open_staging(section) as staging:
            fill(staging)
            staging.commit()
        return True

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def prepare_restore(
        self,
        credentials: WriteCredentials,
        storage: BackupStorage,
        metadata: Mapping[str, Any],
        time_budget: float,
    ) -> None:
        """
        Validate that `metadata` describes a restorable backup in `storage`.

        Nothing is modified.

        Raises
        ------
        RestoreError
            ``MISMATCHED_DATA_VERSION`` for unknown top-level fields,
            ``CURRUPTED_DATA`` for any other structural problem.
        BackupTimeoutError
            If the budget ran out between validation groups.
        """
        self._validate(storage, metadata, deadline_after(self._clock, time_budget))

    def restore(
        self,
        credentials: WriteCredentials,
        storage: BackupStorage,
        metadata: Mapping[str, Any],
    ) -> None:
        """
        Replay a backup into the live installation.

        Files from every section are written over the live tree through
        `credentials`; live files absent from the backup are left in place.
        Options are written back last.

        Raises
        ------
        RestoreError
            If validation fails (see `prepare_restore`) or a file cannot be
            read or written (``OTHER``).
        """
        # Restore is not budgeted; validation gets an open-ended deadline.
        validated = self._validate(storage, metadata, datetime.max.replace(tzinfo=self._clock.now().tzinfo))
        paths = self._installation.paths

        try:
            self._restore_core(credentials, storage, validated)
            for slug, section in validated.themes.items():
                self._replay(credentials, storage, section, paths.themes_directory / slug)
            for plugin in validated.plugins:
                if plugin.type == PLUGIN_TYPE_ROOT_FILE:
                    self._replay(credentials, storage, plugin.section, paths.plugins_directory)
                else:
                    self._replay(credentials, storage, plugin.section, paths.plugins_directory / plugin.key)
            self._replay(credentials, storage, validated.mu_plugins, paths.mu_plugins_directory)
            self._replay(credentials, storage, validated.languages, paths.languages_directory)
            self._replay(credentials, storage, validated.dropins, paths.content_directory)
            self._replay(credentials, storage, validated.root_directory, paths.root_directory)
            self._restore_options(storage, validated.options)
        except RestoreError:
            raise
        except (OSError, CalmBackupError) as exc:
            raise RestoreError(CORE_ENGINE_ID, RestoreReason.OTHER, f"Restore failed: {exc!s}") from exc

        logger.info("Core restore from %s complete", storage.identifier())

    def _validate(
        self,
        storage: BackupStorage,
        metadata: Mapping[str, Any],
        deadline: datetime,
    ) -> ValidatedCoreBackup:
        return validate_core_metadata(
            metadata,
            storage,
            engine_id=CORE_ENGINE_ID,
            deadline=deadline,
            clock=self._clock,
        )

    def _restore_core(
        self,
        credentials: WriteCredentials,
        storage: BackupStorage,
        validated: ValidatedCoreBackup,
    ) -> None:
        paths = self._installation.paths
        trees = {
            paths.admin_directory.name: paths.admin_directory,
            paths.includes_directory.name: paths.includes_directory,
        }
        for relative in storage.section_files(validated.core.directory):
            parts = PurePosixPath(relative).parts
            if len(parts) > 1 and parts[0] in trees:
                target = trees[parts[0]].joinpath(*parts[1:])
            else:
                target = paths.root_directory.joinpath(*parts)
            self._write(credentials, storage, validated.core.directory + relative, target)

    def _replay(
        self,
        credentials: WriteCredentials,
        storage: BackupStorage,
        section: SectionRef,
        target_root: Path,
    ) -> None:
        credentials.make_directory(target_root)
        for relative in storage.section_files(section.directory):
            target = target_root.joinpath(*PurePosixPath(relative).parts)
            self._write(credentials, storage, section.directory + relative, target)

    @staticmethod
    def _write(credentials: WriteCredentials, storage: BackupStorage, source: str, target: Path) -> None:
        credentials.make_directory(target.parent)
        credentials.write_file(target, storage.read_file(source))

    def _restore_options(self, storage: BackupStorage, section: SectionRef) -> None:
        for name in section.files:
            match = OPTIONS_FILE_PATTERN.match(name)
            if match is None:
                raise RestoreError(
                    CORE_ENGINE_ID, RestoreReason.CURRUPTED_DATA, f"Unexpected options file name: {name!r}"
                )
            try:
                rows = deserialize_options(storage.read_file(section.directory + name))
            except (UnicodeDecodeError, ValueError) as exc:
                raise RestoreError(
                    CORE_ENGINE_ID, RestoreReason.CURRUPTED_DATA, f"Malformed options document {name}: {exc!s}"
                ) from exc
            self._installation.options.write_options(int(match.group(1)), rows)
