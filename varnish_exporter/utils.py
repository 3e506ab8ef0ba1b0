"""Small string, file and data helpers shared by the exporter."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from typing import Any


def starts_with(text: str, prefix: str, ignore_case: bool = False) -> bool:
    """Return whether ``text`` starts with ``prefix``."""
    if ignore_case:
        return text.lower().startswith(prefix.lower())
    return text.startswith(prefix)


def starts_with_any(text: str, prefixes: Iterable[str], ignore_case: bool = False) -> bool:
    """Return whether ``text`` starts with any of ``prefixes``."""
    return any(starts_with(text, prefix, ignore_case) for prefix in prefixes)


def ends_with(text: str, suffix: str, ignore_case: bool = False) -> bool:
    """Return whether ``text`` ends with ``suffix``."""
    if ignore_case:
        return text.lower().endswith(suffix.lower())
    return text.endswith(suffix)


def ends_with_any(text: str, suffixes: Iterable[str], ignore_case: bool = False) -> bool:
    """Return whether ``text`` ends with any of ``suffixes``."""
    return any(ends_with(text, suffix, ignore_case) for suffix in suffixes)


def file_exists(path: str | os.PathLike[str]) -> bool:
    """Return whether a file or directory exists at ``path``."""
    if not os.fspath(path):
        return False
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def string_property(data: Mapping[str, Any], key: str) -> str:
    """Return ``data[key]`` as a string, or "" when the key is missing.

    Raises TypeError when the value is present but is not a string.
    """
    if key not in data:
        return ""
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} is not a string")
    return value