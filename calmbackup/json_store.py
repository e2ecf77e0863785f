"""
JSON I/O helpers for backup records and run payloads.

Design constraints
------------------
- Writes are atomic (temp file + replace) so a reader never observes a
  half-written record.
- Serialization is deterministic for a given in-memory object.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

from calmbackup.errors import BackupRecordError, StagingIOError


def dumps_compact(payload: Any) -> bytes:
    """Serialize a payload as compact UTF-8 JSON bytes."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def write_json_atomic(json_path: Path, payload: Mapping[str, Any]) -> None:
    """
    Write `payload` as indented, key-sorted UTF-8 JSON, atomically.

    Raises
    ------
    StagingIOError
        If the file cannot be written.
    """
    json_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = json_path.with_suffix(json_path.suffix + ".tmp")

    try:
        with temp_path.open("w", encoding="utf-8", newline="\n") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True, ensure_ascii=False)
            handle.write("\n")
        os.replace(temp_path, json_path)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise StagingIOError(f"Failed to write JSON: {json_path} ({exc!s})") from exc


def read_json_object(json_path: Path) -> dict[str, Any]:
    """
    Read a JSON object from disk.

    Raises
    ------
    BackupRecordError
        If the file is unreadable, not UTF-8, not valid JSON, or not a JSON object.
    """
    try:
        payload = json.loads(json_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise BackupRecordError(f"Failed to read {json_path}: {exc!s}") from exc
    except UnicodeDecodeError as exc:
        raise BackupRecordError(f"{json_path} is not valid UTF-8") from exc
    except json.JSONDecodeError as exc:
        raise BackupRecordError(f"Invalid JSON in {json_path}") from exc

    if not isinstance(payload, dict):
        raise BackupRecordError(f"Expected a JSON object in {json_path}")
    return payload
