"""
Component header parsing.

Themes and plugins declare their identity in a comment block at the top of a
file (``style.css`` for themes, the main ``.php`` file for plugins)::

    /*
     * Plugin Name: Example
     * Version: 1.2
     */

Only the first 8 KiB of a file are inspected.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

HEADER_READ_BYTES = 8 * 1024

THEME_HEADERS: tuple[str, ...] = ("Theme Name", "Version", "Template")
PLUGIN_HEADERS: tuple[str, ...] = ("Plugin Name", "Version")

# An opening php tag may share the line with the first header.
_LINE_PREFIX = r"^(?:[ \t]*<\?php)?[ \t/*#@]*"


def _clean_value(raw: str) -> str:
    # Closing comment markers may share the line with the value.
    value = re.sub(r"\s*(?:\*/|\?>).*$", "", raw)
    return value.strip()


def parse_headers(text: str, names: Iterable[str]) -> dict[str, str]:
    """
    Extract header values from a block of text.

    Parameters
    ----------
    text:
        Leading text of the file.
    names:
        Header names to look for (case-insensitive).

    Returns
    -------
    dict[str, str]
        Every requested name mapped to its value, or to ``""`` if absent.
    """
    text = text.replace("\r", "\n")
    found: dict[str, str] = {}
    for name in names:
        pattern = re.compile(_LINE_PREFIX + re.escape(name) + r":(.*)$", re.IGNORECASE | re.MULTILINE)
        match = pattern.search(text)
        found[name] = _clean_value(match.group(1)) if match else ""
    return found


def read_file_headers(path: Path, names: Iterable[str]) -> dict[str, str]:
    """
    Read header values from the first 8 KiB of a file.

    Unreadable files yield empty values rather than an error: a component
    without readable headers is treated as not being a component.
    """
    try:
        with Path(path).open("rb") as handle:
            head = handle.read(HEADER_READ_BYTES)
    except OSError:
        return {name: "" for name in names}
    return parse_headers(head.decode("utf-8", errors="replace"), names)
