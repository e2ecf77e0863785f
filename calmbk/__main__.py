"""
Module entrypoint for the calmbackup CLI.

This file exists so that `python -m calmbk ...` works when the console-script
wrapper is not installed. It delegates to the CLI module.
"""

from __future__ import annotations

from calmbk.cli import main


def _run() -> None:
    """
    Execute the command line interface and exit with its status code.

    Raises
    ------
    SystemExit
        Always, carrying the CLI exit code.
    """
    raise SystemExit(main())


if __name__ == "__main__":
    _run()
