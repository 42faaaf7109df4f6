"""Overlay backend: reads layer directories straight from runtime storage.

This is the fastest path (nothing is decompressed or copied) but it usually
needs root, since storage roots are owned by the runtime.

Docker (image/<driver>/...):
    repositories.json           reference -> image id
    imagedb/content/sha256/<id> image config
    layerdb/sha256/<chain>/cache-id
    <driver>/<cache-id>/diff    layer contents (vfs/dir/<cache-id> for vfs)

Podman (containers/storage):
    <driver>-images/images.json        names -> image id, top layer id
    <driver>-images/<id>/=<base64 key> image config
    <driver>-layers/layers.json        layer id -> parent, diff digest
    <driver>/<layer-id>/diff           layer contents (vfs/dir/<id> for vfs)
"""

import asyncio
import base64
import json
import logging
import os
import stat
from pathlib import Path
from typing import Any, Optional

import aiofiles

from ..core.types import RuntimeInfo, RuntimeKind, StorageDriver
from ..exceptions import (
    ChainResolutionError,
    LayerReadError,
    PermissionDenied,
    SourceError,
)
from ..models import FileEntry, ImageInfo, LayerInfo
from ..tar.tags import parse_repository_tag, reference_candidates
from ..utils.digest import compute_chain_ids, looks_like_image_id, strip_algorithm
from ..utils.inspect import ImageConfig, parse_image_config
from ..utils.whiteout import dedupe_entries, to_entry

logger = logging.getLogger(__name__)

BACKEND = "overlay"

OPAQUE_XATTRS = (
    "trusted.overlay.opaque",
    "user.overlay.opaque",
    "user.fuseoverlayfs.opaque",
)

DOCKER_DRIVER_DIRS = {
    StorageDriver.OVERLAY2: "overlay2",
    StorageDriver.FUSE: "fuse-overlayfs",
    StorageDriver.VFS: "vfs",
}

PODMAN_DRIVER_DIRS = {
    StorageDriver.OVERLAY2: "overlay",
    StorageDriver.FUSE: "overlay",
    StorageDriver.VFS: "vfs",
}


def _is_opaque_dir(path: str) -> bool:
    getxattr = getattr(os, "getxattr", None)
    if getxattr is None:
        return False
    for attribute in OPAQUE_XATTRS:
        try:
            if getxattr(path, attribute, follow_symlinks=False) == b"y":
                return True
        except OSError:
            # ENODATA when unset, EPERM for trusted.* without CAP_SYS_ADMIN
            continue
    return False


def walk_layer_dir(root: Path, layer: str = "") -> tuple[FileEntry, ...]:
    """Record every change stored in one layer directory.

    Symlinks are not followed. Whiteouts are recognised both by name
    (.wh.<name>) and in overlayfs' native form, a 0/0 character device.
    Opaque directories are recognised by the .wh..wh..opq file or by the
    overlay opaque xattr.

    Raises:
        PermissionDenied: If part of the tree cannot be read
        LayerReadError: On any other I/O error during the walk
    """
    entries: list[FileEntry] = []
    pending = [(str(root), "")]

    while pending:
        directory, prefix = pending.pop()
        try:
            with os.scandir(directory) as scan:
                for item in scan:
                    relative = f"{prefix}{item.name}"
                    st = item.stat(follow_symlinks=False)
                    if stat.S_ISDIR(st.st_mode):
                        if _is_opaque_dir(item.path):
                            entries.append(
                                FileEntry(path=relative, is_whiteout=True, is_opaque=True)
                            )
                        pending.append((item.path, f"{relative}/"))
                        continue
                    if stat.S_ISCHR(st.st_mode) and st.st_rdev == 0:
                        entries.append(FileEntry(path=relative, is_whiteout=True))
                        continue
                    if stat.S_ISREG(st.st_mode) or stat.S_ISLNK(st.st_mode):
                        size = st.st_size
                    else:
                        size = 0
                    entry = to_entry(relative, size)
                    if entry is not None:
                        entries.append(entry)
        except PermissionError as e:
            raise PermissionDenied(
                f"Permission denied: {e.strerror}", backend=BACKEND, layer=layer, path=directory
            ) from e
        except OSError as e:
            raise LayerReadError(
                f"Failed to walk layer: {e}", backend=BACKEND, layer=layer, path=directory
            ) from e

    return dedupe_entries(entries)


async def _read_text(path: Path, layer: Optional[str] = None) -> str:
    try:
        async with aiofiles.open(path, "r") as f:
            return await f.read()
    except FileNotFoundError as e:
        raise ChainResolutionError(
            "Storage metadata not found", backend=BACKEND, layer=layer, path=str(path)
        ) from e
    except PermissionError as e:
        raise PermissionDenied(
            "Cannot read storage metadata", backend=BACKEND, layer=layer, path=str(path)
        ) from e
    except OSError as e:
        raise LayerReadError(
            f"Failed to read storage metadata: {e}", backend=BACKEND, layer=layer, path=str(path)
        ) from e


async def _read_json(path: Path, layer: Optional[str] = None) -> Any:
    text = await _read_text(path, layer)
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ChainResolutionError(
            f"Invalid JSON in storage metadata: {e}", backend=BACKEND, path=str(path)
        ) from e


def bigdata_name(key: str) -> str:
    """File name containers/storage uses for an image's big-data item."""
    return "=" + base64.b64encode(key.encode("utf-8")).decode("ascii")


class OverlayInspector:
    """Reads layers directly from Docker or Podman overlay/vfs storage."""

    name = BACKEND

    def __init__(self, runtime: RuntimeInfo) -> None:
        if runtime.storage_root is None or not runtime.supports_direct_walk:
            raise SourceError(
                f"{runtime.kind.value} storage ({runtime.storage_driver.value}) "
                "cannot be walked directly",
                backend=BACKEND,
            )
        self.runtime = runtime
        self.storage_root = Path(runtime.storage_root)

    # ---- Docker ----

    @property
    def _docker_image_dir(self) -> Path:
        return self.storage_root / "image" / DOCKER_DRIVER_DIRS[self.runtime.storage_driver]

    def _docker_layer_dir(self, cache_id: str) -> Path:
        driver_dir = DOCKER_DRIVER_DIRS[self.runtime.storage_driver]
        if self.runtime.storage_driver == StorageDriver.VFS:
            return self.storage_root / "vfs" / "dir" / cache_id
        return self.storage_root / driver_dir / cache_id / "diff"

    async def _docker_image_id(self, image: str) -> str:
        content_dir = self._docker_image_dir / "imagedb" / "content" / "sha256"
        if looks_like_image_id(image):
            wanted = strip_algorithm(image)
            try:
                matches = sorted(p.name for p in content_dir.iterdir() if p.name.startswith(wanted))
            except OSError as e:
                raise ChainResolutionError(
                    f"Cannot list image database: {e}", backend=BACKEND, path=str(content_dir)
                ) from e
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise ChainResolutionError(f"Image id '{image}' is ambiguous", backend=BACKEND)

        repos_path = self._docker_image_dir / "repositories.json"
        repos = await _read_json(repos_path)
        repositories = repos.get("Repositories", {}) if isinstance(repos, dict) else {}
        candidates = reference_candidates(image)
        for references in repositories.values():
            for candidate in candidates:
                if candidate in references:
                    return strip_algorithm(references[candidate])
        raise ChainResolutionError(
            f"Image '{image}' not found in repositories.json",
            backend=BACKEND,
            path=str(repos_path),
        )

    async def _docker_layers(self, image: str) -> tuple[ImageConfig, list[tuple[str, Path]]]:
        image_id = await self._docker_image_id(image)
        config_path = self._docker_image_dir / "imagedb" / "content" / "sha256" / image_id
        config = parse_image_config(await _read_text(config_path), source=str(config_path))

        layerdb = self._docker_image_dir / "layerdb" / "sha256"
        layers = []
        for diff_id, chain_id in zip(config.diff_ids, compute_chain_ids(config.diff_ids)):
            cache_id_path = layerdb / strip_algorithm(chain_id) / "cache-id"
            cache_id = (await _read_text(cache_id_path, layer=diff_id)).strip()
            layers.append((diff_id, self._docker_layer_dir(cache_id)))
        return config, layers

    # ---- Podman ----

    def _podman_dir(self, suffix: str = "") -> Path:
        return self.storage_root / f"{PODMAN_DRIVER_DIRS[self.runtime.storage_driver]}{suffix}"

    def _podman_layer_dir(self, layer_id: str) -> Path:
        if self.runtime.storage_driver == StorageDriver.VFS:
            return self.storage_root / "vfs" / "dir" / layer_id
        return self._podman_dir() / layer_id / "diff"

    async def _podman_image(self, image: str) -> dict[str, Any]:
        images_path = self._podman_dir("-images") / "images.json"
        images = await _read_json(images_path)
        if not isinstance(images, list):
            raise ChainResolutionError(
                "images.json must be a list", backend=BACKEND, path=str(images_path)
            )

        candidates = set(reference_candidates(image))
        for record in images:
            if candidates & set(record.get("names") or []):
                return record
        if looks_like_image_id(image):
            wanted = strip_algorithm(image)
            matches = [r for r in images if str(r.get("id", "")).startswith(wanted)]
            if len(matches) == 1:
                return matches[0]
        raise ChainResolutionError(
            f"Image '{image}' not found in images.json", backend=BACKEND, path=str(images_path)
        )

    async def _podman_layers(self, image: str) -> tuple[ImageConfig, list[tuple[str, Path]]]:
        record = await self._podman_image(image)
        image_id = record["id"]

        config_path = self._podman_dir("-images") / image_id / bigdata_name(f"sha256:{image_id}")
        config = parse_image_config(await _read_text(config_path), source=str(config_path))

        layers_path = self._podman_dir("-layers") / "layers.json"
        records = await _read_json(layers_path)
        by_id = {r["id"]: r for r in records if isinstance(r, dict) and "id" in r}

        chain = []
        current = record.get("layer")
        while current:
            layer = by_id.get(current)
            if layer is None:
                raise ChainResolutionError(
                    "Layer referenced by image not found in layers.json",
                    backend=BACKEND,
                    layer=current,
                    path=str(layers_path),
                )
            if layer in chain:
                raise ChainResolutionError(
                    "Layer parents form a cycle", backend=BACKEND, layer=current
                )
            chain.append(layer)
            current = layer.get("parent")
        chain.reverse()

        layers = [
            (layer.get("diff-digest") or layer["id"], self._podman_layer_dir(layer["id"]))
            for layer in chain
        ]
        return config, layers

    # ---- Inspector ----

    async def inspect(self, image: str) -> ImageInfo:
        """Resolve the image's layer chain and walk every layer concurrently.

        Raises:
            ChainResolutionError: If the image or one of its layers is missing
            PermissionDenied: If storage cannot be read
            LayerReadError: On other I/O errors
        """
        if self.runtime.kind == RuntimeKind.DOCKER:
            config, layer_dirs = await self._docker_layers(image)
        else:
            config, layer_dirs = await self._podman_layers(image)

        for digest, directory in layer_dirs:
            if not directory.is_dir():
                raise ChainResolutionError(
                    "Layer directory not found", backend=BACKEND, layer=digest, path=str(directory)
                )

        loop = asyncio.get_running_loop()
        walks = [
            loop.run_in_executor(None, walk_layer_dir, directory, digest)
            for digest, directory in layer_dirs
        ]
        listings = await asyncio.gather(*walks)

        layers = []
        for index, ((digest, _), files) in enumerate(zip(layer_dirs, listings)):
            history = config.layer_history(index)
            layers.append(
                LayerInfo(
                    digest=digest,
                    created_by=history.created_by,
                    created_at=history.created_at,
                    files=files,
                )
            )
            logger.debug("Walked layer %s: %d entries", digest, len(files))

        if looks_like_image_id(image):
            name, tag = image, None
        else:
            name, tag = parse_repository_tag(image)
        return ImageInfo(
            name=name,
            tag=tag,
            architecture=config.architecture,
            source=self.name,
            layers=tuple(layers),
        )

    async def list_layers(self, image: str) -> list[LayerInfo]:
        info = await self.inspect(image)
        return list(info.layers)
