"""Source backends that read an image's layers."""

from .archive import ArchiveInspector
from .base import Inspector
from .export import ExportInspector
from .overlay import OverlayInspector

__all__ = [
    "Inspector",
    "ArchiveInspector",
    "ExportInspector",
    "OverlayInspector",
]
