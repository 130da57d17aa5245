"""Path normalization for hashing and for composite sort keys."""

from __future__ import annotations

import os
import unicodedata
from typing import Optional

# Traditional Win32 MAX_PATH.
WINDOWS_MAX_PATH = 260
_EXTENDED_PREFIX = "\\\\?\\"
_EXTENDED_UNC_PREFIX = "\\\\?\\UNC\\"


def normalize_path(path: str, platform: Optional[str] = None) -> str:
    """Return the NFC form of ``path`` with an extended-length prefix if needed.

    The prefix is only applied on Windows, and only when the normalized path
    is longer than MAX_PATH and not already prefixed.
    """
    platform = platform or os.name
    normalized = unicodedata.normalize("NFC", path)
    if platform != "nt" or len(normalized) <= WINDOWS_MAX_PATH:
        return normalized
    if normalized.startswith(_EXTENDED_PREFIX):
        return normalized
    if normalized.startswith("\\\\"):
        return _EXTENDED_UNC_PREFIX + normalized[2:]
    return _EXTENDED_PREFIX + normalized


def strip_extended_prefix(path: str) -> str:
    if path.startswith(_EXTENDED_UNC_PREFIX):
        return "\\\\" + path[len(_EXTENDED_UNC_PREFIX):]
    if path.startswith(_EXTENDED_PREFIX):
        return path[len(_EXTENDED_PREFIX):]
    return path


def sort_key(path: str, root: Optional[str] = None) -> str:
    """Case-insensitive, separator-neutral key for a path relative to ``root``."""
    value = strip_extended_prefix(path)
    if root:
        base = strip_extended_prefix(root)
        try:
            value = os.path.relpath(value, base)
        except ValueError:
            # Different drives on Windows; keep the absolute path.
            pass
    value = unicodedata.normalize("NFC", value).replace("\\", "/")
    return value.casefold()


def filename_key(path: str) -> str:
    """Basename-only key. Collides for equal names in different folders."""
    value = strip_extended_prefix(path).replace("\\", "/")
    return unicodedata.normalize("NFC", value.rsplit("/", 1)[-1]).casefold()


def is_unc_path(path: str) -> bool:
    return path.startswith("\\\\") and not path.startswith(_EXTENDED_PREFIX)


def unc_host(path: str) -> Optional[str]:
    """Server name of a ``\\\\server\\share`` path, else None."""
    if path.startswith(_EXTENDED_UNC_PREFIX):
        path = "\\\\" + path[len(_EXTENDED_UNC_PREFIX):]
    if not is_unc_path(path):
        return None
    host = path[2:].split("\\", 1)[0]
    return host or None
