"""Union filesystem whiteout naming and entry normalisation."""

import posixpath
from typing import Iterable, Optional

from ..models import FileEntry

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"
# .wh..wh.plnk, .wh..wh.aufs and friends are runtime bookkeeping.
META_PREFIX = ".wh..wh."


def normalize_path(path: str) -> str:
    """Normalize an in-layer path: POSIX separators, no leading "./" or "/"."""
    path = path.replace("\\", "/")
    normalized = posixpath.normpath("/" + path).lstrip("/")
    return "" if normalized == "." else normalized


def to_entry(path: str, size: int) -> Optional[FileEntry]:
    """Convert a raw layer member into a FileEntry.

    Whiteout names become deletion entries for the path they hide, the opaque
    marker becomes an opaque entry for its directory, and runtime bookkeeping
    names are dropped (None).
    """
    normalized = normalize_path(path)
    if not normalized:
        return None

    parent, name = posixpath.split(normalized)
    if name == OPAQUE_MARKER:
        if not parent:
            return None
        return FileEntry(path=parent, size=0, is_whiteout=True, is_opaque=True)
    if name.startswith(META_PREFIX):
        return None
    if name.startswith(WHITEOUT_PREFIX):
        hidden = name[len(WHITEOUT_PREFIX):]
        if not hidden:
            return None
        return FileEntry(path=posixpath.join(parent, hidden), size=0, is_whiteout=True)
    return FileEntry(path=normalized, size=size)


def _rank(entry: FileEntry) -> int:
    if not entry.is_whiteout:
        return 2
    return 1 if entry.is_opaque else 0


def dedupe_entries(entries: Iterable[FileEntry]) -> tuple[FileEntry, ...]:
    """Make paths unique within one layer and sort them.

    A later plain entry replaces an earlier one. A plain entry beats a
    whiteout for the same path because whiteouts only hide lower layers, and
    an opaque marker beats a whiteout of its own directory.
    """
    unique: dict[str, FileEntry] = {}
    for entry in entries:
        current = unique.get(entry.path)
        if current is None or _rank(entry) >= _rank(current):
            unique[entry.path] = entry
    return tuple(sorted(unique.values()))
