"""Data models for inspected images, layers and file entries."""

from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import Optional

from .merge import MergeResult, merge_layers

KIND_FILE = "file"
KIND_WHITEOUT = "whiteout"
KIND_OPAQUE = "opaque"


@dataclass(frozen=True, order=True)
class FileEntry:
    """A single change recorded by a layer.

    Plain entries describe an added or modified file. Whiteouts carry the
    deleted path with the marker stripped. Opaque markers carry the path of
    the directory whose lower contents are hidden.
    """

    path: str
    size: int = 0
    is_whiteout: bool = False
    is_opaque: bool = False

    @property
    def kind(self) -> str:
        if self.is_opaque:
            return KIND_OPAQUE
        if self.is_whiteout:
            return KIND_WHITEOUT
        return KIND_FILE


@dataclass(frozen=True)
class LayerInfo:
    """Metadata and raw changes of one image layer."""

    digest: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    files: tuple[FileEntry, ...] = ()

    @property
    def size(self) -> int:
        """Total size of the non-deletion entries in this layer."""
        return sum(entry.size for entry in self.files if not entry.is_whiteout)


@dataclass(frozen=True)
class ImageInfo:
    """Full inspection result for a container image (layers oldest first)."""

    name: str
    tag: Optional[str] = None
    architecture: Optional[str] = None
    source: Optional[str] = None
    layers: tuple[LayerInfo, ...] = field(default_factory=tuple)

    @cached_property
    def merged(self) -> MergeResult:
        """Resolved filesystem history of the layer stack."""
        return merge_layers(self.layers)

    @property
    def total_size(self) -> int:
        """Size of the resolved filesystem at the top of the stack."""
        return self.merged.resolved_size()

    @property
    def raw_size(self) -> int:
        """Naive sum of layer sizes, counting overwritten bytes repeatedly."""
        return sum(layer.size for layer in self.layers)

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}" if self.tag else self.name
