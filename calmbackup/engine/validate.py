"""
Validation of core engine metadata before a restore.

Validation is pure: it reads the storage (section existence) but never
modifies anything. A successful validation returns a typed view of the
metadata that restore consumes; any problem raises `RestoreError`.

Rules
-----
- The top level must have exactly the expected keys. Unknown keys mean the
  metadata was produced by a newer engine (``MISMATCHED_DATA_VERSION``);
  missing keys mean corruption (``CURRUPTED_DATA``). Unknown keys win when
  both occur.
- Every sub-record must have exactly its expected field set with the expected
  scalar types.
- Every referenced section must exist in the storage, and every path must be
  relative without ``..``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from calmbackup.clock import Clock, throw_if_out_of_time
from calmbackup.errors import RestoreError, RestoreReason, SafetyViolationError
from calmbackup.inventory import PLUGIN_TYPE_DIRECTORY, PLUGIN_TYPE_ROOT_FILE
from calmbackup.paths import safe_relative_path
from calmbackup.storage import BackupStorage

TOP_LEVEL_KEYS: frozenset[str] = frozenset(
    {"version", "themes", "plugins", "mu_plugins", "languages", "dropins", "root_directory", "options"}
)
THEME_FIELDS: frozenset[str] = frozenset({"version", "directory", "name", "directory_name"})
PLUGIN_FIELDS: frozenset[str] = frozenset({"version", "directory", "type", "data"})
PLUGIN_DATA_FIELDS: frozenset[str] = frozenset({"file", "name", "version"})
DIRECTORY_FIELDS: frozenset[str] = frozenset({"directory"})
DIRECTORY_WITH_FILES_FIELDS: frozenset[str] = frozenset({"directory", "files"})

OPTIONS_FILE_PATTERN = re.compile(r"^(\d+)-options\.json$")


@dataclass(frozen=True, slots=True)
class SectionRef:
    """A validated section reference and the files it is expected to hold."""

    directory: str
    files: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ValidatedPlugin:
    """A validated plugin entry."""

    key: str
    type: str
    section: SectionRef


@dataclass(frozen=True, slots=True)
class ValidatedCoreBackup:
    """
    Typed view of validated core engine metadata.

    Attributes
    ----------
    version:
        Core version; the core section is ``core/<version>/``.
    themes:
        Theme slug mapped to its section.
    plugins:
        Plugin units, sorted by key.
    mu_plugins, languages, dropins, root_directory, options:
        Sections of the timestamped groups.
    """

    version: str
    core: SectionRef
    themes: dict[str, SectionRef]
    plugins: tuple[ValidatedPlugin, ...]
    mu_plugins: SectionRef
    languages: SectionRef
    dropins: SectionRef
    root_directory: SectionRef
    options: SectionRef


class _Validator:
    def __init__(self, engine_id: str, storage: BackupStorage) -> None:
        self._engine_id = engine_id
        self._storage = storage

    def corrupted(self, message: str) -> RestoreError:
        return RestoreError(self._engine_id, RestoreReason.CURRUPTED_DATA, message)

    def record(self, value: Any, expected: frozenset[str], *, where: str) -> Mapping[str, Any]:
        if not isinstance(value, Mapping):
            raise self.corrupted(f"{where} is not an object")
        if len(value) != len(expected) or set(value.keys()) != expected:
            raise self.corrupted(
                f"{where} has fields {sorted(value.keys())}, expected {sorted(expected)}"
            )
        return value

    def string(self, value: Any, *, where: str) -> str:
        if not isinstance(value, str) or not value:
            raise self.corrupted(f"{where} is not a non-empty string")
        return value

    def name(self, value: Any, *, where: str) -> str:
        text = self.string(value, where=where)
        if "/" in text or "\\" in text or text in (".", ".."):
            raise self.corrupted(f"{where} is not a plain name: {text!r}")
        return text

    def section(self, value: Any, *, where: str) -> str:
        text = self.string(value, where=where)
        try:
            relative = safe_relative_path(text)
        except SafetyViolationError as exc:
            raise self.corrupted(f"{where} is not a safe relative path: {exc}") from exc
        directory = relative.as_posix() + "/"
        if not self._storage.section_exists(directory):
            raise self.corrupted(f"{where} references a missing section: {directory}")
        return directory

    def files(self, value: Any, *, where: str) -> tuple[str, ...]:
        if not isinstance(value, list):
            raise self.corrupted(f"{where} is not an array")
        return tuple(self.name(item, where=f"{where}[{i}]") for i, item in enumerate(value))


def validate_core_metadata(
    metadata: Any,
    storage: BackupStorage,
    *,
    engine_id: str,
    deadline: datetime,
    clock: Clock,
) -> ValidatedCoreBackup:
    """
    Validate core engine metadata against a storage.

    Parameters
    ----------
    metadata:
        Decoded metadata as returned by the engine's backup.
    storage:
        Storage the sections are expected in.
    engine_id:
        Identifier reported in raised errors.
    deadline:
        Time after which validation stops with `BackupTimeoutError`.
    clock:
        Time source.

    Returns
    -------
    ValidatedCoreBackup
        Typed view of the metadata.

    Raises
    ------
    RestoreError
        If the metadata is not restorable.
    BackupTimeoutError
        If the deadline passed between groups.
    """
    v = _Validator(engine_id, storage)

    if not isinstance(metadata, Mapping):
        raise v.corrupted("metadata is not an object")

    keys = set(metadata.keys())
    extra = keys - TOP_LEVEL_KEYS
    if extra:
        raise RestoreError(
            engine_id,
            RestoreReason.MISMATCHED_DATA_VERSION,
            f"Unknown metadata fields: {', '.join(sorted(extra))}",
        )
    missing = TOP_LEVEL_KEYS - keys
    if missing:
        raise v.corrupted(f"Missing metadata fields: {', '.join(sorted(missing))}")

    version = v.name(metadata["version"], where="version")
    core = SectionRef(directory=v.section(f"core/{version}/", where="core section"))

    throw_if_out_of_time(deadline, clock)
    themes_value = metadata["themes"]
    if not isinstance(themes_value, Mapping):
        raise v.corrupted("themes is not an object")
    themes: dict[str, SectionRef] = {}
    for slug in sorted(themes_value):
        where = f"themes[{slug!r}]"
        theme = v.record(themes_value[slug], THEME_FIELDS, where=where)
        v.name(slug, where=where)
        v.string(theme["version"], where=f"{where}.version")
        v.string(theme["name"], where=f"{where}.name")
        if v.name(theme["directory_name"], where=f"{where}.directory_name") != slug:
            raise v.corrupted(f"{where}.directory_name does not match the theme key")
        themes[slug] = SectionRef(directory=v.section(theme["directory"], where=f"{where}.directory"))

    throw_if_out_of_time(deadline, clock)
    plugins_value = metadata["plugins"]
    if not isinstance(plugins_value, Mapping):
        raise v.corrupted("plugins is not an object")
    plugins: list[ValidatedPlugin] = []
    for key in sorted(plugins_value):
        where = f"plugins[{key!r}]"
        plugin = v.record(plugins_value[key], PLUGIN_FIELDS, where=where)
        v.name(key, where=where)
        v.string(plugin["version"], where=f"{where}.version")
        plugin_type = plugin["type"]
        if plugin_type not in (PLUGIN_TYPE_ROOT_FILE, PLUGIN_TYPE_DIRECTORY):
            raise v.corrupted(f"{where}.type is not an expected value: {plugin_type!r}")
        data = plugin["data"]
        if not isinstance(data, list) or not data:
            raise v.corrupted(f"{where}.data is not a non-empty array")
        for i, item in enumerate(data):
            entry = v.record(item, PLUGIN_DATA_FIELDS, where=f"{where}.data[{i}]")
            for field_name in ("file", "name", "version"):
                v.string(entry[field_name], where=f"{where}.data[{i}].{field_name}")
        directory = v.section(plugin["directory"], where=f"{where}.directory")
        files = (key,) if plugin_type == PLUGIN_TYPE_ROOT_FILE else ()
        plugins.append(ValidatedPlugin(key=key, type=plugin_type, section=SectionRef(directory=directory, files=files)))

    throw_if_out_of_time(deadline, clock)
    groups: dict[str, SectionRef] = {}
    for group in ("mu_plugins", "languages"):
        entry = v.record(metadata[group], DIRECTORY_FIELDS, where=group)
        groups[group] = SectionRef(directory=v.section(entry["directory"], where=f"{group}.directory"))
    for group in ("dropins", "root_directory", "options"):
        entry = v.record(metadata[group], DIRECTORY_WITH_FILES_FIELDS, where=group)
        groups[group] = SectionRef(
            directory=v.section(entry["directory"], where=f"{group}.directory"),
            files=v.files(entry["files"], where=f"{group}.files"),
        )
    for name in groups["options"].files:
        if OPTIONS_FILE_PATTERN.match(name) is None:
            raise v.corrupted(f"options.files holds an unexpected file name: {name!r}")

    return ValidatedCoreBackup(
        version=version,
        core=core,
        themes=themes,
        plugins=tuple(plugins),
        mu_plugins=groups["mu_plugins"],
        languages=groups["languages"],
        dropins=groups["dropins"],
        root_directory=groups["root_directory"],
        options=groups["options"],
    )
