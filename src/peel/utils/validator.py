"""Archive layout detection and manifest validation."""

import posixpath
from enum import Enum
from typing import Any

from ..exceptions import FormatError
from ..tar.reader import ArchiveScan

MANIFEST_JSON = "manifest.json"
INDEX_JSON = "index.json"
LEGACY_LAYER_NAME = "layer.tar"


class ArchiveLayout(str, Enum):
    DOCKER = "docker"
    OCI = "oci"
    LEGACY = "legacy"


def legacy_layer_ids(scan: ArchiveScan) -> list[str]:
    """Ids of "<id>/layer.tar" members that come with an "<id>/json" file."""
    ids = []
    for name in list(scan.layers) + list(scan.unreadable) + list(scan.aliases):
        directory, filename = posixpath.split(name)
        if filename == LEGACY_LAYER_NAME and directory and "/" not in directory:
            if posixpath.join(directory, "json") in scan.documents:
                ids.append(directory)
    return sorted(set(ids))


def detect_layout(scan: ArchiveScan) -> ArchiveLayout:
    """Decide which archive shape a scan describes.

    docker-save manifests win over the OCI index (Docker 25+ writes both),
    and per-layer legacy tars are the last resort.

    Raises:
        FormatError: If the archive matches no known layout
    """
    if MANIFEST_JSON in scan.documents:
        return ArchiveLayout.DOCKER
    if INDEX_JSON in scan.documents:
        return ArchiveLayout.OCI
    if legacy_layer_ids(scan):
        return ArchiveLayout.LEGACY
    raise FormatError(
        "Unrecognized archive format: no manifest.json, index.json or legacy layer tars found"
    )


def has_required_fields(entry: dict[str, Any], required_fields: list[str]) -> bool:
    """Check if a manifest entry has all required fields."""
    return all(field in entry for field in required_fields)


def validate_docker_manifest(manifest_data: Any) -> dict[str, Any]:
    """Return the first entry of a docker-save manifest.json.

    Raises:
        FormatError: If the manifest is not a non-empty list of entries with
            "Config" and a "Layers" list
    """
    if not isinstance(manifest_data, list) or not manifest_data:
        raise FormatError("manifest.json must be a non-empty array", path=MANIFEST_JSON)

    entry = manifest_data[0]
    if not isinstance(entry, dict) or not has_required_fields(entry, ["Config", "Layers"]):
        raise FormatError(
            "manifest.json entry must have Config and Layers", path=MANIFEST_JSON
        )
    if not isinstance(entry["Layers"], list):
        raise FormatError("manifest.json Layers must be a list", path=MANIFEST_JSON)
    return entry


def validate_oci_manifest(manifest: Any, name: str) -> dict[str, Any]:
    """Check an OCI image manifest has a config descriptor and a layers list.

    Raises:
        FormatError: If either is missing
    """
    if not isinstance(manifest, dict):
        raise FormatError("OCI manifest must be a JSON object", path=name)
    config = manifest.get("config")
    if not isinstance(config, dict) or "digest" not in config:
        raise FormatError("OCI manifest has no config descriptor", path=name)
    layers = manifest.get("layers")
    if not isinstance(layers, list) or not all(
        isinstance(layer, dict) and "digest" in layer for layer in layers
    ):
        raise FormatError("OCI manifest layers must be a list of descriptors", path=name)
    return manifest
