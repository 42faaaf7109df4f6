"""peel - Container image layer inspection for Docker, Podman and containerd."""

__version__ = "0.1.0"

from .core.types import Backend, InspectConfig, ProbeResult, RuntimeInfo, RuntimeKind
from .exceptions import (
    ChainResolutionError,
    FormatError,
    InconsistentLayerError,
    LayerReadError,
    PeelError,
    PermissionDenied,
    SourceError,
    SubprocessFailure,
)
from .inspect import inspect_image, list_layers, probe_runtimes
from .merge import LayerDelta, MergeResult, merge_layers
from .models import FileEntry, ImageInfo, LayerInfo

__all__ = [
    "inspect_image",
    "list_layers",
    "probe_runtimes",
    "merge_layers",
    "MergeResult",
    "LayerDelta",
    "ImageInfo",
    "LayerInfo",
    "FileEntry",
    "InspectConfig",
    "ProbeResult",
    "RuntimeInfo",
    "RuntimeKind",
    "Backend",
    "PeelError",
    "SourceError",
    "PermissionDenied",
    "FormatError",
    "ChainResolutionError",
    "SubprocessFailure",
    "LayerReadError",
    "InconsistentLayerError",
]
