"""Archive backend: docker-save, OCI-layout and legacy v1 tarballs."""

import asyncio
import logging
import posixpath
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

from ..exceptions import FormatError, SourceError
from ..models import ImageInfo, LayerInfo
from ..tar.reader import ArchiveScan, scan_archive
from ..tar.tags import (
    parse_repository_tag,
    ref_from_annotations,
    repo_tags_from_manifest,
    repo_tags_from_repositories,
)
from ..utils.inspect import command_from_v1, parse_created_timestamp, parse_image_config
from ..utils.validator import (
    INDEX_JSON,
    MANIFEST_JSON,
    ArchiveLayout,
    detect_layout,
    legacy_layer_ids,
    validate_docker_manifest,
    validate_oci_manifest,
)

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".tar", ".tar.gz", ".tgz")
LAYOUT_MARKERS = (MANIFEST_JSON, INDEX_JSON, "oci-layout", "repositories")
MAX_INDEX_DEPTH = 4
ATTESTATION_TYPE = "vnd.docker.reference.type"


def looks_like_archive(image: str) -> bool:
    """True if an image argument names an archive or an unpacked layout.

    A directory only counts when it holds an image layout, so a reference
    such as "alpine" still goes to a runtime when ./alpine happens to exist.
    """
    if image.endswith(ARCHIVE_SUFFIXES):
        return True
    path = Path(image)
    if path.is_dir():
        return any((path / marker).is_file() for marker in LAYOUT_MARKERS)
    return path.is_file()


def _archive_stem(path: Path) -> str:
    name = path.name
    for suffix in sorted(ARCHIVE_SUFFIXES, key=len, reverse=True):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def blob_path(digest: str) -> str:
    """Location of a content-addressed blob inside an OCI layout."""
    algorithm, _, encoded = digest.partition(":")
    if not encoded:
        raise FormatError(f"Invalid blob digest: {digest}")
    return f"blobs/{algorithm}/{encoded}"


def _name_and_tag(
    repo_tags: list[str], fallback: str
) -> tuple[str, Optional[str]]:
    if repo_tags:
        return parse_repository_tag(repo_tags[0])
    return fallback, None


def _parse_docker(scan: ArchiveScan, fallback_name: str) -> dict[str, Any]:
    entry = validate_docker_manifest(scan.load_json(MANIFEST_JSON))
    config = parse_image_config(scan.load_json(entry["Config"]), source=entry["Config"])

    layers = []
    for index, layer_path in enumerate(entry["Layers"]):
        history = config.layer_history(index)
        if index < len(config.diff_ids):
            digest = config.diff_ids[index]
        else:
            digest = f"sha256:{posixpath.basename(layer_path)}"
        layers.append(
            LayerInfo(
                digest=digest,
                created_by=history.created_by,
                created_at=history.created_at,
                files=scan.layer_entries(layer_path),
            )
        )

    repo_tags = repo_tags_from_manifest(entry)
    if not repo_tags and "repositories" in scan.documents:
        repo_tags = repo_tags_from_repositories(scan.load_json("repositories"))
    name, tag = _name_and_tag(repo_tags, fallback_name)
    return dict(name=name, tag=tag, architecture=config.architecture, layers=layers)


def _is_index(document: dict[str, Any]) -> bool:
    return isinstance(document.get("manifests"), list)


def _pick_descriptor(index: dict[str, Any], name: str) -> dict[str, Any]:
    manifests = [m for m in index.get("manifests", []) if isinstance(m, dict)]
    images = [
        m
        for m in manifests
        if (m.get("annotations") or {}).get(ATTESTATION_TYPE) != "attestation-manifest"
    ]
    if not images:
        raise FormatError("No image manifests in index", path=name)
    return images[0]


def _parse_oci(scan: ArchiveScan, fallback_name: str) -> dict[str, Any]:
    document = scan.load_json(INDEX_JSON)
    document_name = INDEX_JSON
    reference = None

    for _ in range(MAX_INDEX_DEPTH):
        if not isinstance(document, dict) or not _is_index(document):
            break
        descriptor = _pick_descriptor(document, document_name)
        reference = reference or ref_from_annotations(descriptor.get("annotations"))
        document_name = blob_path(descriptor.get("digest", ""))
        document = scan.load_json(document_name)
    if isinstance(document, dict) and _is_index(document):
        raise FormatError("Image index nesting too deep", path=document_name)

    manifest = validate_oci_manifest(document, document_name)
    config_name = blob_path(manifest["config"]["digest"])
    config = parse_image_config(scan.load_json(config_name), source=config_name)

    layers = []
    for index, descriptor in enumerate(manifest["layers"]):
        history = config.layer_history(index)
        if index < len(config.diff_ids):
            digest = config.diff_ids[index]
        else:
            digest = descriptor["digest"]
        layers.append(
            LayerInfo(
                digest=digest,
                created_by=history.created_by,
                created_at=history.created_at,
                files=scan.layer_entries(blob_path(descriptor["digest"])),
            )
        )

    name, tag = fallback_name, None
    if reference:
        if "/" not in reference and ":" not in reference:
            # A bare ref.name annotation is just the tag
            tag = reference
        else:
            name, tag = parse_repository_tag(reference)
    return dict(name=name, tag=tag, architecture=config.architecture, layers=layers)


def _tagged_layer(scan: ArchiveScan, known: dict[str, Any]) -> Optional[str]:
    """Top layer id of the first tag in a legacy "repositories" file."""
    if "repositories" not in scan.documents:
        return None
    repositories = scan.load_json("repositories")
    if not isinstance(repositories, dict):
        return None
    for tags in repositories.values():
        if not isinstance(tags, dict):
            continue
        for layer_id in tags.values():
            if layer_id in known:
                return layer_id
    return None


def _legacy_chain(scan: ArchiveScan, layer_jsons: dict[str, dict[str, Any]]) -> list[str]:
    parents = {
        layer_id: data.get("parent") for layer_id, data in layer_jsons.items()
    }
    referenced = {parent for parent in parents.values() if parent}
    tops = sorted(layer_id for layer_id in parents if layer_id not in referenced)

    tagged = _tagged_layer(scan, parents)
    if tagged:
        tops = [tagged]
    if not tops:
        raise FormatError("Legacy layer parents form a cycle")

    chain = []
    current: Optional[str] = tops[0]
    while current:
        if current not in layer_jsons:
            raise FormatError(f"Legacy layer {current} not found in archive", path=current)
        if current in chain:
            raise FormatError("Legacy layer parents form a cycle", path=current)
        chain.append(current)
        current = layer_jsons[current].get("parent")
    chain.reverse()
    return chain


def _parse_legacy(scan: ArchiveScan, fallback_name: str) -> dict[str, Any]:
    layer_jsons = {}
    for layer_id in legacy_layer_ids(scan):
        data = scan.load_json(f"{layer_id}/json")
        if not isinstance(data, dict):
            raise FormatError("Legacy layer json must be an object", path=f"{layer_id}/json")
        layer_jsons[layer_id] = data

    chain = _legacy_chain(scan, layer_jsons)
    layers = [
        LayerInfo(
            digest=layer_id,
            created_by=command_from_v1(layer_jsons[layer_id]),
            created_at=parse_created_timestamp(layer_jsons[layer_id].get("created")),
            files=scan.layer_entries(f"{layer_id}/layer.tar"),
        )
        for layer_id in chain
    ]

    repo_tags = []
    if "repositories" in scan.documents:
        repo_tags = repo_tags_from_repositories(scan.load_json("repositories"))
    name, tag = _name_and_tag(repo_tags, fallback_name)
    architecture = layer_jsons[chain[-1]].get("architecture") if chain else None
    return dict(name=name, tag=tag, architecture=architecture, layers=layers)


_PARSERS = {
    ArchiveLayout.DOCKER: _parse_docker,
    ArchiveLayout.OCI: _parse_oci,
    ArchiveLayout.LEGACY: _parse_legacy,
}


def parse_archive(
    source: Union[str, Path, BinaryIO],
    name: Optional[str] = None,
    tag: Optional[str] = None,
    backend: str = "archive",
) -> ImageInfo:
    """Parse an image archive (path, unpacked directory or stream) synchronously.

    Args:
        source: Tar file path, layout directory, or a readable binary stream
        name: Image name to report instead of the one recorded in the archive
        tag: Image tag to report together with `name`
        backend: Backend name recorded on the result and on errors

    Returns:
        ImageInfo with every layer's raw entries

    Raises:
        FormatError: If the archive is malformed or references missing blobs
        LayerReadError: If the archive cannot be read
    """
    if isinstance(source, (str, Path)):
        fallback = _archive_stem(Path(source))
    else:
        fallback = name or "image"

    try:
        scan = scan_archive(source)
        layout = detect_layout(scan)
        logger.debug("Archive %s has %s layout", fallback, layout.value)
        parsed = _PARSERS[layout](scan, fallback)
    except SourceError as e:
        e.backend = e.backend or backend
        raise

    if name:
        parsed["name"], parsed["tag"] = name, tag
    return ImageInfo(
        name=parsed["name"],
        tag=parsed["tag"],
        architecture=parsed["architecture"],
        source=backend,
        layers=tuple(parsed["layers"]),
    )


class ArchiveInspector:
    """Reads layers from a pre-existing archive or unpacked image layout.

    Works for `docker save`, `podman save`, `ctr image export` output and any
    OCI-layout tar or directory.
    """

    name = "archive"

    def __init__(self, source: Optional[Union[str, Path]] = None) -> None:
        self.source = Path(source) if source is not None else None

    def _resolve_source(self, image: str) -> Path:
        source = self.source or Path(image)
        if not source.exists():
            raise FormatError("Archive not found", backend=self.name, path=str(source))
        return source

    async def inspect(self, image: str) -> ImageInfo:
        """Parse the archive in a worker thread and return the image."""
        source = self._resolve_source(image)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, parse_archive, source)

    async def list_layers(self, image: str) -> list[LayerInfo]:
        info = await self.inspect(image)
        return list(info.layers)
