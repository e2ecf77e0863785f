"""
Command-line interface for calmbackup.

Notes
-----
The CLI is thin. It parses arguments, builds a manager for one installation
and delegates to it. Every command prints a single JSON document to stdout.

Status and exit codes
---------------------
- ``complete``       0
- ``failed``         2  (``message`` explains)
- ``incomplete``     3  (time budget ran out; run the same command again)
- ``data_mismatch``  4  (restore only; ``engine_ids`` names the engines)
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from calmbackup.credentials import DirectWriteCredentials, WriteCredentials
from calmbackup.engine.core import CoreBackupEngine
from calmbackup.errors import BackupTimeoutError, CalmBackupError, MissingEnginesError, RestoreError, RestoreReason
from calmbackup.installation import open_installation
from calmbackup.manager import BackupManager
from calmbackup.paths import InstallPaths, default_backup_root
from calmbackup.storage import DEFAULT_LOCAL_STORAGE_ID, LocalBackupStorage

logger = logging.getLogger(__name__)

DEFAULT_TIME_BUDGET = 15.0

STATUS_EXIT_CODES: dict[str, int] = {
    "complete": 0,
    "failed": 2,
    "incomplete": 3,
    "data_mismatch": 4,
}


def handle_backup_request(
    manager: BackupManager,
    *,
    description: str,
    storage_id: str,
    time_budget: float,
    engine_ids: Sequence[str] = (),
) -> dict[str, str]:
    """
    Create a backup and report the outcome as a status object.

    Returns
    -------
    dict[str, str]
        ``status`` is ``complete``, ``incomplete`` or ``failed``; ``message``
        carries details for failures and the backup id on completion.
    """
    ret = {"status": "complete", "message": ""}
    try:
        record = manager.create_backup(description, storage_id, time_budget, *engine_ids)
    except BackupTimeoutError:
        ret["status"] = "incomplete"
        return ret
    except (CalmBackupError, OSError, ValueError) as exc:
        logger.error("Backup failed: %s", exc)
        ret["status"] = "failed"
        ret["message"] = str(exc)
        return ret

    ret["message"] = record.unique_id
    return ret


def handle_restore_request(
    manager: BackupManager,
    *,
    backup_id: str,
    credentials: WriteCredentials,
    time_budget: float,
) -> dict[str, str]:
    """
    Restore a backup and report the outcome as a status object.

    Returns
    -------
    dict[str, str]
        ``status`` is ``complete``, ``incomplete``, ``data_mismatch`` (with
        ``engine_ids``) or ``failed``.
    """
    ret = {"status": "complete", "message": ""}
    try:
        manager.restore_backup(backup_id, credentials, time_budget)
    except BackupTimeoutError:
        ret["status"] = "incomplete"
        return ret
    except RestoreError as exc:
        if exc.reason == RestoreReason.OTHER and not isinstance(exc, MissingEnginesError):
            logger.error("Restore of %s failed in %s: %s", backup_id, exc.engine_id, exc.message)
            ret["status"] = "failed"
            ret["message"] = exc.message
            return ret
        logger.error("Restore of %s rejected by %s: %s", backup_id, exc.engine_id, exc.message)
        ret["status"] = "data_mismatch"
        ret["message"] = exc.message
        ret["engine_ids"] = exc.engine_id
        return ret
    except (CalmBackupError, OSError, ValueError) as exc:
        logger.error("Restore failed: %s", exc)
        ret["status"] = "failed"
        ret["message"] = str(exc)
        return ret
    return ret


def _record_summary(record: Any) -> dict[str, Any]:
    return {
        "unique_id": record.unique_id,
        "time_created": record.time_created,
        "description": record.description,
        "backup_engines": list(record.backup_engines),
        "storage": record.storage.identifier(),
    }


def _add_installation_args(parser: argparse.ArgumentParser, *, needs_options: bool) -> None:
    parser.add_argument("--install-root", required=True, type=Path, help="Installation root directory")
    parser.add_argument(
        "--storage-root",
        type=Path,
        default=None,
        help="Backup storage root. Defaults to $CALMBACKUP_ROOT or <uploads>/.private/backup.",
    )
    if needs_options:
        parser.add_argument("--options-db", required=True, type=Path, help="SQLite database holding the options")
        parser.add_argument("--table-prefix", default="wp_", help="Table prefix (default: wp_)")
        parser.add_argument("--core-version", default=None, help="Override the detected core version")
        parser.add_argument(
            "--time-budget",
            type=float,
            default=DEFAULT_TIME_BUDGET,
            help=f"Seconds after which no new phase starts (default: {DEFAULT_TIME_BUDGET:g}).",
        )


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    parser = argparse.ArgumentParser(
        prog="calmbk",
        description="Versioned backup and restore of site code and settings",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    backup_p = sub.add_parser("backup", help="Create a backup (call again while it reports incomplete)")
    _add_installation_args(backup_p, needs_options=True)
    backup_p.add_argument("--description", default="", help="Human-readable description of the backup")
    backup_p.add_argument(
        "--engine",
        action="append",
        default=[],
        help="Engine identifier to run. Repeatable. Defaults to every registered engine.",
    )

    list_p = sub.add_parser("list", help="List existing backups, newest first")
    _add_installation_args(list_p, needs_options=False)

    restore_p = sub.add_parser("restore", help="Restore a backup by ID")
    _add_installation_args(restore_p, needs_options=True)
    restore_p.add_argument("--backup-id", required=True, help="Identifier of the backup to restore")

    delete_p = sub.add_parser("delete", help="Delete a backup record by ID")
    _add_installation_args(delete_p, needs_options=False)
    delete_p.add_argument("--backup-id", required=True, help="Identifier of the backup to delete")

    return parser


def _storage_for(args: argparse.Namespace) -> LocalBackupStorage:
    root = args.storage_root
    if root is None:
        root = default_backup_root(InstallPaths.from_root(args.install_root))
    return LocalBackupStorage(root, identifier=DEFAULT_LOCAL_STORAGE_ID)


def _build_manager(args: argparse.Namespace, *, with_engine: bool) -> BackupManager:
    storage = _storage_for(args)
    engines = []
    if with_engine:
        installation = open_installation(
            args.install_root,
            options_db=args.options_db,
            table_prefix=args.table_prefix,
            core_version=args.core_version,
        )
        engines.append(CoreBackupEngine(installation))
    return BackupManager(storages=[storage], engines=engines)


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Parameters
    ----------
    argv:
        Optional argument vector. If None, argparse uses sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    try:
        manager = _build_manager(args, with_engine=args.command in ("backup", "restore"))
    except (CalmBackupError, ValueError) as exc:
        print(json.dumps({"status": "failed", "message": str(exc)}))
        return STATUS_EXIT_CODES["failed"]

    if args.command == "backup":
        status = handle_backup_request(
            manager,
            description=args.description,
            storage_id=DEFAULT_LOCAL_STORAGE_ID,
            time_budget=args.time_budget,
            engine_ids=args.engine,
        )
        print(json.dumps(status))
        return STATUS_EXIT_CODES[status["status"]]

    if args.command == "restore":
        credentials = DirectWriteCredentials(allowed_root=InstallPaths.from_root(args.install_root).root_directory)
        status = handle_restore_request(
            manager,
            backup_id=args.backup_id,
            credentials=credentials,
            time_budget=args.time_budget,
        )
        print(json.dumps(status))
        return STATUS_EXIT_CODES[status["status"]]

    if args.command == "list":
        print(json.dumps([_record_summary(r) for r in manager.existing_backups()], indent=2))
        return 0

    if args.command == "delete":
        try:
            manager.delete_backup(args.backup_id)
        except CalmBackupError as exc:
            print(json.dumps({"status": "failed", "message": str(exc)}))
            return STATUS_EXIT_CODES["failed"]
        print(json.dumps({"status": "complete", "message": ""}))
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
