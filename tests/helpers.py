"""Builders for synthetic image archives and runtime storage trees."""

import base64
import gzip
import io
import json
import os
import stat
import sys
import tarfile
from pathlib import Path
from typing import Optional, Union

from peel.core.types import RuntimeInfo, RuntimeKind, StorageDriver
from peel.utils.digest import calculate_digest, compute_chain_ids

# Layer contents: path -> bytes (file), None (directory),
# ("symlink", target) or ("hardlink", target)
LayerFiles = dict[str, Union[bytes, None, tuple[str, str]]]

CREATED = "2025-01-15T10:30:45.123456789Z"


def add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    """Add an in-memory regular file to a tar."""
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    tar.addfile(info, fileobj=io.BytesIO(data))


def layer_tar(files: LayerFiles, compress: bool = False) -> bytes:
    """Build a layer tar from a path -> content mapping."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            if content is None:
                info = tarfile.TarInfo(name)
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            elif isinstance(content, tuple):
                kind, target = content
                info = tarfile.TarInfo(name)
                info.type = tarfile.SYMTYPE if kind == "symlink" else tarfile.LNKTYPE
                info.linkname = target
                tar.addfile(info)
            else:
                add_bytes(tar, name, content)
    data = buffer.getvalue()
    return gzip.compress(data) if compress else data


def image_config(
    diff_ids: list[str],
    commands: Optional[list[str]] = None,
    architecture: str = "amd64",
) -> bytes:
    """Image config JSON with one history entry per layer plus one empty layer."""
    commands = commands or [f"RUN step {i}" for i in range(len(diff_ids))]
    history = [{"created": CREATED, "created_by": "ENV A=1", "empty_layer": True}]
    history += [{"created": CREATED, "created_by": command} for command in commands]
    config = {
        "architecture": architecture,
        "os": "linux",
        "rootfs": {"type": "layers", "diff_ids": diff_ids},
        "history": history,
    }
    return json.dumps(config).encode("utf-8")


def diff_ids_for(layers: list[LayerFiles]) -> list[str]:
    return [calculate_digest(layer_tar(files)) for files in layers]


def build_docker_save(
    path: Path,
    layers: list[LayerFiles],
    repo_tags: Optional[list[str]] = None,
    commands: Optional[list[str]] = None,
    compress: bool = False,
) -> Path:
    """Write a `docker save` style archive (manifest.json + <id>/layer.tar)."""
    diff_ids = diff_ids_for(layers)
    config = image_config(diff_ids, commands)
    config_name = f"{calculate_digest(config).split(':', 1)[1]}.json"

    layer_names = []
    with tarfile.open(path, "w") as tar:
        add_bytes(tar, config_name, config)
        for files, diff_id in zip(layers, diff_ids):
            name = f"{diff_id.split(':', 1)[1]}/layer.tar"
            add_bytes(tar, name, layer_tar(files, compress=compress))
            layer_names.append(name)
        manifest = [
            {
                "Config": config_name,
                "RepoTags": repo_tags if repo_tags is not None else ["app:1.0"],
                "Layers": layer_names,
            }
        ]
        add_bytes(tar, "manifest.json", json.dumps(manifest).encode("utf-8"))
    return path


def _blob(tar: tarfile.TarFile, data: bytes) -> dict:
    digest = calculate_digest(data)
    add_bytes(tar, f"blobs/sha256/{digest.split(':', 1)[1]}", data)
    return {"digest": digest, "size": len(data)}


def build_oci_layout(
    path: Path,
    layers: list[LayerFiles],
    ref_name: Optional[str] = None,
    nested: bool = False,
    with_attestation: bool = False,
) -> Path:
    """Write an OCI image layout tar (oci-layout, index.json, blobs/)."""
    diff_ids = diff_ids_for(layers)
    with tarfile.open(path, "w") as tar:
        add_bytes(tar, "oci-layout", b'{"imageLayoutVersion": "1.0.0"}')
        config_desc = _blob(tar, image_config(diff_ids))
        config_desc["mediaType"] = "application/vnd.oci.image.config.v1+json"
        layer_descs = []
        for files in layers:
            desc = _blob(tar, layer_tar(files, compress=True))
            desc["mediaType"] = "application/vnd.oci.image.layer.v1.tar+gzip"
            layer_descs.append(desc)
        manifest = {
            "schemaVersion": 2,
            "mediaType": "application/vnd.oci.image.manifest.v1+json",
            "config": config_desc,
            "layers": layer_descs,
        }
        manifest_desc = _blob(tar, json.dumps(manifest).encode("utf-8"))
        manifest_desc["mediaType"] = manifest["mediaType"]

        manifests = []
        if with_attestation:
            attestation = _blob(tar, json.dumps({"schemaVersion": 2, "layers": []}).encode())
            attestation["annotations"] = {"vnd.docker.reference.type": "attestation-manifest"}
            manifests.append(attestation)
        manifests.append(manifest_desc)

        if nested:
            inner = {"schemaVersion": 2, "manifests": manifests}
            inner_desc = _blob(tar, json.dumps(inner).encode("utf-8"))
            inner_desc["mediaType"] = "application/vnd.oci.image.index.v1+json"
            manifests = [inner_desc]
        if ref_name:
            manifests[-1]["annotations"] = {"org.opencontainers.image.ref.name": ref_name}

        index = {"schemaVersion": 2, "manifests": manifests}
        add_bytes(tar, "index.json", json.dumps(index).encode("utf-8"))
    return path


def build_legacy_save(
    path: Path,
    layers: list[LayerFiles],
    repository: Optional[tuple[str, str]] = ("legacy", "v1"),
) -> Path:
    """Write a v1 archive: <id>/layer.tar + <id>/json linked by parent ids."""
    ids = [f"{index:02d}" + "a" * 62 for index in range(len(layers))]
    with tarfile.open(path, "w") as tar:
        # Newest first, so parse order cannot depend on member order
        for index in reversed(range(len(layers))):
            layer_json = {
                "id": ids[index],
                "created": CREATED,
                "architecture": "arm64",
                "container_config": {"Cmd": ["/bin/sh", "-c", f"step {index}"]},
            }
            if index:
                layer_json["parent"] = ids[index - 1]
            add_bytes(tar, f"{ids[index]}/json", json.dumps(layer_json).encode("utf-8"))
            add_bytes(tar, f"{ids[index]}/layer.tar", layer_tar(layers[index]))
        if repository:
            repositories = {repository[0]: {repository[1]: ids[-1]}}
            add_bytes(tar, "repositories", json.dumps(repositories).encode("utf-8"))
    return path


def write_tree(directory: Path, files: LayerFiles) -> None:
    """Materialise layer contents as an overlay diff directory."""
    directory.mkdir(parents=True, exist_ok=True)
    for name, content in files.items():
        target = directory / name
        if content is None:
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, tuple):
            kind, link = content
            if kind == "symlink":
                os.symlink(link, target)
            else:
                os.link(directory / link, target)
        else:
            target.write_bytes(content)


def build_docker_storage(
    root: Path,
    layers: list[LayerFiles],
    reference: str = "app:1.0",
    driver: str = "overlay2",
) -> str:
    """Write a Docker storage root holding one image. Returns the image id."""
    diff_ids = diff_ids_for(layers)
    config = image_config(diff_ids)
    image_id = calculate_digest(config).split(":", 1)[1]

    image_dir = root / "image" / driver
    content = image_dir / "imagedb" / "content" / "sha256"
    content.mkdir(parents=True)
    (content / image_id).write_bytes(config)

    repository = reference.rsplit(":", 1)[0]
    repositories = {"Repositories": {repository: {reference: f"sha256:{image_id}"}}}
    (image_dir / "repositories.json").write_text(json.dumps(repositories))

    for index, (files, chain_id) in enumerate(zip(layers, compute_chain_ids(diff_ids))):
        cache_id = f"{index:02d}" + "c" * 62
        layer_db = image_dir / "layerdb" / "sha256" / chain_id.split(":", 1)[1]
        layer_db.mkdir(parents=True)
        (layer_db / "cache-id").write_text(cache_id)
        if driver == "vfs":
            write_tree(root / "vfs" / "dir" / cache_id, files)
        else:
            write_tree(root / driver / cache_id / "diff", files)
    return image_id


def build_podman_storage(
    root: Path,
    layers: list[LayerFiles],
    names: Optional[list[str]] = None,
) -> str:
    """Write a containers/storage overlay root holding one image."""
    diff_ids = diff_ids_for(layers)
    config = image_config(diff_ids)
    image_id = calculate_digest(config).split(":", 1)[1]
    layer_ids = [f"{index:02d}" + "b" * 62 for index in range(len(layers))]

    layer_records = []
    for index, (files, layer_id) in enumerate(zip(layers, layer_ids)):
        record = {"id": layer_id, "diff-digest": diff_ids[index]}
        if index:
            record["parent"] = layer_ids[index - 1]
        layer_records.append(record)
        write_tree(root / "overlay" / layer_id / "diff", files)
    (root / "overlay-layers").mkdir(parents=True)
    (root / "overlay-layers" / "layers.json").write_text(json.dumps(layer_records))

    images = [
        {
            "id": image_id,
            "names": names if names is not None else ["localhost/app:1.0"],
            "layer": layer_ids[-1] if layer_ids else "",
        }
    ]
    image_dir = root / "overlay-images" / image_id
    image_dir.mkdir(parents=True)
    (root / "overlay-images" / "images.json").write_text(json.dumps(images))
    key = "=" + base64.b64encode(f"sha256:{image_id}".encode()).decode()
    (image_dir / key).write_bytes(config)
    return image_id


def overlay_runtime(
    root: Path,
    kind: RuntimeKind = RuntimeKind.DOCKER,
    driver: StorageDriver = StorageDriver.OVERLAY2,
    binary_path: Optional[Path] = None,
) -> RuntimeInfo:
    return RuntimeInfo(
        kind=kind,
        binary_path=binary_path,
        storage_driver=driver,
        storage_root=root,
        can_read=True,
        is_running=True,
    )


def write_script(path: Path, body: str) -> Path:
    """Write an executable Python script run by the current interpreter."""
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def resolved_map(entries) -> dict[str, int]:
    return {entry.path: entry.size for entry in entries}
