"""Streaming reader for image archives and the layer tars inside them.

The outer archive is read once, front to back, in tarfile stream mode, so a
pipe works as well as a file. Layer blobs are enumerated while the outer
stream is positioned on them; only their entry lists are kept.
"""

import json
import logging
import os
import posixpath
import tarfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

from ..exceptions import FormatError, LayerReadError
from ..models import FileEntry
from ..utils.whiteout import dedupe_entries, normalize_path, to_entry

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
USTAR_MAGIC = b"ustar"
MAX_JSON_SIZE = 16 * 1024 * 1024
JSON_NAMES = {"repositories", "oci-layout", "json"}

ArchiveSource = Union[str, Path, BinaryIO]


@dataclass
class ArchiveMember:
    """One regular file or link in an image archive.

    `stream` is only valid until the iterator advances.
    """

    name: str
    size: int
    stream: Optional[BinaryIO] = None
    link: Optional[str] = None


@dataclass
class ArchiveScan:
    """Everything one pass over an archive collected."""

    documents: dict[str, bytes] = field(default_factory=dict)
    layers: dict[str, tuple[FileEntry, ...]] = field(default_factory=dict)
    unreadable: dict[str, str] = field(default_factory=dict)
    aliases: dict[str, str] = field(default_factory=dict)

    def resolve(self, name: str) -> str:
        """Follow archive-level links (docker save links shared layers)."""
        name = normalize_path(name)
        seen = set()
        while name in self.aliases and name not in seen:
            seen.add(name)
            name = self.aliases[name]
        return name

    def has(self, name: str) -> bool:
        name = self.resolve(name)
        return name in self.documents or name in self.layers or name in self.unreadable

    def load_json(self, name: str):
        """Decode a collected JSON document.

        Raises:
            FormatError: If the document is missing or not valid JSON
        """
        resolved = self.resolve(name)
        if resolved not in self.documents:
            raise FormatError(f"{name} not found in archive", path=name)
        try:
            return json.loads(self.documents[resolved])
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FormatError(f"Invalid JSON in {name}: {e}", path=name) from e

    def layer_entries(self, name: str) -> tuple[FileEntry, ...]:
        """Return the entries of a layer blob referenced by a manifest.

        Raises:
            FormatError: If the blob is missing or could not be enumerated
        """
        resolved = self.resolve(name)
        if resolved in self.layers:
            return self.layers[resolved]
        if resolved in self.unreadable:
            raise FormatError(
                f"Cannot read layer blob: {self.unreadable[resolved]}", path=name
            )
        raise FormatError("Layer blob referenced by manifest not found", path=name)


def _link_target(name: str, linkname: str, symbolic: bool) -> str:
    if symbolic:
        return normalize_path(posixpath.join(posixpath.dirname(name), linkname))
    return normalize_path(linkname)


def iter_tar_members(fileobj: BinaryIO) -> Iterator[ArchiveMember]:
    """Yield regular files and links of a tar stream (compression auto-detected)."""
    with tarfile.open(fileobj=fileobj, mode="r|*") as tar:
        for member in tar:
            name = normalize_path(member.name)
            if member.issym() or member.islnk():
                yield ArchiveMember(
                    name=name,
                    size=0,
                    link=_link_target(name, member.linkname, member.issym()),
                )
            elif member.isfile():
                stream = tar.extractfile(member)
                try:
                    yield ArchiveMember(name=name, size=member.size, stream=stream)
                finally:
                    stream.close()


def iter_directory_members(root: Path) -> Iterator[ArchiveMember]:
    """Yield the files of an unpacked image directory (OCI layout or docker save)."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            name = normalize_path(path.relative_to(root).as_posix())
            if path.is_symlink():
                target = os.readlink(path)
                yield ArchiveMember(name=name, size=0, link=_link_target(name, target, True))
                continue
            with open(path, "rb") as stream:
                yield ArchiveMember(name=name, size=path.stat().st_size, stream=stream)


def iter_layer_entries(stream: BinaryIO, compressed: bool) -> Iterator[FileEntry]:
    """Lazily enumerate the changes recorded in one layer tar.

    Directories are skipped; hard links take the size of their target and
    symlinks the length of their target path, as lstat reports on disk.
    """
    mode = "r|gz" if compressed else "r|"
    sizes: dict[str, int] = {}
    with tarfile.open(fileobj=stream, mode=mode) as layer:
        for member in layer:
            if member.isdir():
                continue
            if member.islnk():
                size = sizes.get(normalize_path(member.linkname), 0)
            elif member.issym():
                size = len(os.fsencode(member.linkname))
            elif member.isfile():
                size = member.size
            else:
                size = 0
            entry = to_entry(member.name, size)
            if entry is None:
                continue
            if not entry.is_whiteout:
                sizes[entry.path] = size
            yield entry


def _peek(stream: BinaryIO, size: int = 512) -> bytes:
    peek = getattr(stream, "peek", None)
    if peek is None:
        raise LayerReadError("Archive stream does not support peeking")
    return peek(size)[:size]


def _is_json_name(name: str) -> bool:
    basename = posixpath.basename(name)
    return name.endswith(".json") or basename in JSON_NAMES


class _Scanner:
    def __init__(self) -> None:
        self.scan = ArchiveScan()

    def add(self, member: ArchiveMember) -> None:
        if member.link is not None:
            self.scan.aliases[member.name] = member.link
            return

        stream = member.stream
        if _is_json_name(member.name):
            if member.size <= MAX_JSON_SIZE:
                self.scan.documents[member.name] = stream.read()
            return

        head = _peek(stream)
        if not head:
            self.scan.layers[member.name] = ()
        elif head.startswith(GZIP_MAGIC):
            self._enumerate(member, compressed=True)
        elif head.startswith(ZSTD_MAGIC):
            self.scan.unreadable[member.name] = "zstd compression is not supported"
        elif head.lstrip()[:1] in (b"{", b"[") and member.size <= MAX_JSON_SIZE:
            self.scan.documents[member.name] = stream.read()
        elif head[257:262] == USTAR_MAGIC or (len(head) == 512 and not any(head)):
            self._enumerate(member, compressed=False)
        else:
            logger.debug("Skipping unrecognised archive member %s", member.name)

    def _enumerate(self, member: ArchiveMember, compressed: bool) -> None:
        try:
            entries = dedupe_entries(iter_layer_entries(member.stream, compressed))
        except (tarfile.TarError, zlib.error, EOFError) as e:
            logger.debug("Layer %s could not be enumerated: %s", member.name, e)
            self.scan.unreadable[member.name] = str(e) or type(e).__name__
            return
        logger.debug("Enumerated layer %s: %d entries", member.name, len(entries))
        self.scan.layers[member.name] = entries


def scan_archive(source: ArchiveSource) -> ArchiveScan:
    """Read an archive (path, directory or binary stream) in a single pass.

    Raises:
        FormatError: If the outer archive is not a readable tar
        LayerReadError: If the archive cannot be read from disk or the pipe
    """
    scanner = _Scanner()
    label = str(source) if isinstance(source, (str, Path)) else "<stream>"

    try:
        if isinstance(source, (str, Path)):
            path = Path(source)
            if path.is_dir():
                for member in iter_directory_members(path):
                    scanner.add(member)
            else:
                with open(path, "rb") as fileobj:
                    for member in iter_tar_members(fileobj):
                        scanner.add(member)
        else:
            for member in iter_tar_members(source):
                scanner.add(member)
    except (tarfile.TarError, zlib.error, EOFError) as e:
        raise FormatError(f"Cannot read tar archive: {e}", path=label) from e
    except OSError as e:
        raise LayerReadError(f"Failed to read archive: {e}", path=label) from e

    return scanner.scan
