"""JSON documents and plain-text summaries of inspection results.

The JSON layout is a compatibility boundary: field names and the `kind`
encoding stay stable, and FORMAT_VERSION changes on breaking edits.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional, Union

import aiofiles

from .core.types import ProbeResult
from .exceptions import FormatError
from .models import KIND_OPAQUE, KIND_WHITEOUT, FileEntry, ImageInfo, LayerInfo
from .utils.inspect import parse_created_timestamp

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
COMMAND_WIDTH = 60


def _entry_to_dict(entry: FileEntry) -> dict[str, Any]:
    return {
        "path": entry.path,
        "size": entry.size,
        "is_whiteout": entry.is_whiteout,
        "kind": entry.kind,
    }


def _paths(entries: tuple[FileEntry, ...]) -> list[str]:
    return [entry.path for entry in entries]


def image_to_dict(image: ImageInfo, include_merge: bool = True) -> dict[str, Any]:
    """Convert an ImageInfo to a JSON-serialisable document.

    Args:
        image: Inspection result
        include_merge: Add resolved total size and per-layer deltas

    Returns:
        dict[str, Any]: Document with format_version, image fields and layers
    """
    document: dict[str, Any] = {
        "format_version": FORMAT_VERSION,
        "name": image.name,
        "tag": image.tag,
        "architecture": image.architecture,
        "source": image.source,
        "raw_size": image.raw_size,
    }
    if include_merge:
        document["total_size"] = image.total_size

    layers = []
    for index, layer in enumerate(image.layers):
        layer_doc: dict[str, Any] = {
            "digest": layer.digest,
            "created_by": layer.created_by,
            "created_at": layer.created_at.isoformat() if layer.created_at else None,
            "size": layer.size,
            "files": [_entry_to_dict(entry) for entry in layer.files],
        }
        if include_merge:
            delta = image.merged.delta(index)
            layer_doc["delta"] = {
                "added": _paths(delta.added),
                "modified": _paths(delta.modified),
                "unchanged": _paths(delta.unchanged),
                "deleted": _paths(delta.deleted),
            }
        layers.append(layer_doc)
    document["layers"] = layers
    return document


def to_json(image: ImageInfo, indent: Optional[int] = 2) -> str:
    return json.dumps(image_to_dict(image), indent=indent)


def _entry_from_dict(data: dict[str, Any]) -> FileEntry:
    kind = data.get("kind")
    if kind is None:
        is_whiteout = bool(data.get("is_whiteout", False))
        is_opaque = False
    else:
        is_whiteout = kind in (KIND_WHITEOUT, KIND_OPAQUE)
        is_opaque = kind == KIND_OPAQUE
    return FileEntry(
        path=data["path"],
        size=0 if is_whiteout else int(data.get("size", 0)),
        is_whiteout=is_whiteout,
        is_opaque=is_opaque,
    )


def image_from_dict(data: dict[str, Any]) -> ImageInfo:
    """Rebuild an ImageInfo from a document written by image_to_dict.

    Unknown fields are ignored; merge output (deltas, total size) is
    recomputed rather than read back.

    Raises:
        FormatError: If required fields are missing or the version is newer
    """
    try:
        version = data.get("format_version", FORMAT_VERSION)
        if version > FORMAT_VERSION:
            raise FormatError(f"Unsupported format_version {version}")
        layers = tuple(
            LayerInfo(
                digest=layer["digest"],
                created_by=layer.get("created_by"),
                created_at=parse_created_timestamp(layer.get("created_at")),
                files=tuple(sorted(_entry_from_dict(entry) for entry in layer.get("files", []))),
            )
            for layer in data.get("layers", [])
        )
        return ImageInfo(
            name=data["name"],
            tag=data.get("tag"),
            architecture=data.get("architecture"),
            source=data.get("source"),
            layers=layers,
        )
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise FormatError(f"Invalid image document: {e}") from e


def from_json(text: Union[str, bytes]) -> ImageInfo:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise FormatError(f"Invalid JSON document: {e}") from e
    if not isinstance(data, dict):
        raise FormatError("Image document must be a JSON object")
    return image_from_dict(data)


async def write_json(image: ImageInfo, destination: Union[str, Path] = "-") -> None:
    """Write the JSON document to a file, or to stdout when destination is "-"."""
    text = to_json(image) + "\n"
    if str(destination) == "-":
        sys.stdout.write(text)
        sys.stdout.flush()
        return
    async with aiofiles.open(destination, "w", encoding="utf-8") as f:
        await f.write(text)
    logger.info("Wrote %s to %s", image.reference, destination)


def format_bytes(size: int) -> str:
    """Human readable size, e.g. 1536 -> "1.5 KB"."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(value) < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def _short_digest(digest: str) -> str:
    _, _, encoded = digest.rpartition(":")
    return encoded[:12]


def _short_command(command: Optional[str]) -> str:
    if not command:
        return "-"
    command = " ".join(command.split())
    if len(command) > COMMAND_WIDTH:
        return command[: COMMAND_WIDTH - 3] + "..."
    return command


def format_summary(image: ImageInfo) -> str:
    """Plain-text overview: image header then one row per layer."""
    lines = [
        f"Image:        {image.reference}",
        f"Architecture: {image.architecture or 'unknown'}",
        f"Source:       {image.source or 'unknown'}",
        f"Total size:   {format_bytes(image.total_size)} "
        f"(layers sum to {format_bytes(image.raw_size)})",
        f"Layers:       {len(image.layers)}",
        "",
        f"{'#':>3}  {'DIGEST':<12}  {'SIZE':>10}  {'+':>5} {'~':>5} {'=':>5} {'-':>5}  COMMAND",
    ]
    for delta, layer in zip(image.merged.deltas, image.layers):
        counts = delta.counts
        lines.append(
            f"{delta.index:>3}  {_short_digest(layer.digest):<12}  "
            f"{format_bytes(layer.size):>10}  "
            f"{counts['added']:>5} {counts['modified']:>5} "
            f"{counts['unchanged']:>5} {counts['deleted']:>5}  "
            f"{_short_command(layer.created_by)}"
        )
    return "\n".join(lines)


def format_probe(probe: ProbeResult) -> str:
    """Plain-text list of detected runtimes, marking the default."""
    if not probe.runtimes:
        return "No container runtimes detected"
    lines = []
    for index, runtime in enumerate(probe.runtimes):
        marker = "*" if index == probe.default else " "
        lines.append(
            f"{marker} {runtime.kind.value:<10} "
            f"driver={runtime.storage_driver.value:<8} "
            f"root={runtime.storage_root or '-'} "
            f"readable={'yes' if runtime.can_read else 'no'} "
            f"running={'yes' if runtime.is_running else 'no'} "
            f"binary={runtime.binary_path or '-'}"
        )
        for note in runtime.incomplete:
            lines.append(f"    ! {note}")
    default = probe.default_runtime
    lines.append(f"Default: {default.kind.value if default else 'none'}")
    return "\n".join(lines)
