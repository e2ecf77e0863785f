"""
Backup records: the persisted, read-back description of one completed backup.

A record is a small JSON file next to the backup sections. It references a
run payload file holding the per-engine metadata. Records are created once at
the end of a successful run and never mutated.

Record schema
-------------
Required fields (extra fields are tolerated):

- ``backup_file``    string, payload path relative to the storage root
- ``description``    string
- ``backup_engines`` array of engine identifiers
- ``time_created``   integer unix time
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from calmbackup.errors import BackupRecordError, SafetyViolationError

if TYPE_CHECKING:
    from calmbackup.storage import BackupStorage

REQUIRED_RECORD_FIELDS: tuple[str, ...] = ("backup_file", "description", "backup_engines", "time_created")


def _require_int(value: Any, *, field_name: str, context: str) -> int:
    if isinstance(value, bool):
        raise BackupRecordError(f"The field {field_name} is not an integer in {context}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise BackupRecordError(f"The field {field_name} is not an integer in {context}")


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """
    A completed backup as read back from a storage.

    Attributes
    ----------
    time_created:
        Unix time at which the backup completed.
    description:
        Human-readable description.
    backup_engines:
        Identifiers of the engines whose data the backup contains.
    backup_file:
        Payload path relative to the storage root.
    unique_id:
        Identifier of the backup within its storage.
    storage:
        The storage holding the backup.
    meta_path:
        Location of the record file (string form; storage specific).
    """

    time_created: int
    description: str
    backup_engines: tuple[str, ...]
    backup_file: str
    unique_id: str
    storage: BackupStorage
    meta_path: str

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        storage: BackupStorage,
        meta_path: str,
    ) -> BackupRecord:
        """
        Construct a record from a decoded record file.

        Raises
        ------
        BackupRecordError
            If required fields are missing or have the wrong type.
        """
        for field_name in REQUIRED_RECORD_FIELDS:
            if field_name not in payload:
                raise BackupRecordError(f"The field {field_name} is missing in {meta_path}")

        for field_name in ("backup_file", "description"):
            if not isinstance(payload[field_name], str):
                raise BackupRecordError(f"The field {field_name} is not a string in {meta_path}")

        engines = payload["backup_engines"]
        if not isinstance(engines, list) or not all(isinstance(e, str) for e in engines):
            raise BackupRecordError(f"The field backup_engines is not an array of strings in {meta_path}")

        time_created = _require_int(payload["time_created"], field_name="time_created", context=meta_path)

        unique_id = payload.get("unique_id")
        if not isinstance(unique_id, str) or not unique_id:
            unique_id = Path(str(payload["backup_file"])).stem

        return cls(
            time_created=time_created,
            description=payload["description"],
            backup_engines=tuple(engines),
            backup_file=payload["backup_file"],
            unique_id=unique_id,
            storage=storage,
            meta_path=meta_path,
        )

    def engine_type(self) -> str:
        """Return the engine identifiers as a comma separated string."""
        return ",".join(self.backup_engines)

    def missing_engines(self, *engine_ids: str) -> list[str]:
        """
        Return the engines used by this backup that are absent from `engine_ids`.

        Order follows `backup_engines`.
        """
        available = set(engine_ids)
        return [engine_id for engine_id in self.backup_engines if engine_id not in available]

    def engines_data(self) -> dict[str, Any]:
        """
        Load the per-engine metadata of this backup from its storage.

        Raises
        ------
        BackupRecordError
            If the payload is unreadable or does not cover every listed engine.
        """
        try:
            raw = self.storage.read_file(self.backup_file)
            payload = json.loads(raw.decode("utf-8"))
        except (OSError, SafetyViolationError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BackupRecordError(f"Cannot read backup payload {self.backup_file}: {exc!s}") from exc

        if not isinstance(payload, dict):
            raise BackupRecordError(f"Backup payload {self.backup_file} is not a JSON object")

        missing = [engine_id for engine_id in self.backup_engines if engine_id not in payload]
        if missing:
            raise BackupRecordError(
                f"Backup payload {self.backup_file} lacks data for engines: {', '.join(missing)}"
            )
        return payload


def new_unique_id() -> str:
    """Return a fresh backup identifier."""
    return uuid.uuid4().hex


def new_record_payload(
    *,
    description: str,
    time_created: int,
    engine_ids: list[str],
    backup_file: str,
    unique_id: str,
) -> dict[str, Any]:
    """Build the JSON payload of a new record file."""
    return {
        "backup_file": backup_file,
        "description": description,
        "backup_engines": list(engine_ids),
        "time_created": int(time_created),
        "unique_id": unique_id,
    }
