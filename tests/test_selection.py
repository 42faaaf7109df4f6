"""Tests for backend selection and the functional inspection API."""

import logging
from pathlib import Path

import pytest

from peel import inspect_image, list_layers
from peel.core.selection import choose_runtime, select_inspector
from peel.core.types import (
    Backend,
    InspectConfig,
    ProbeResult,
    RuntimeInfo,
    RuntimeKind,
    StorageDriver,
)
from peel.exceptions import SourceError
from peel.inspectors import ArchiveInspector, ExportInspector, Inspector, OverlayInspector
from tests.helpers import build_docker_save, build_docker_storage, overlay_runtime, resolved_map


def _runtime(kind, can_read=True, driver=StorageDriver.OVERLAY2, binary=True, root="/var/lib/x"):
    return RuntimeInfo(
        kind=kind,
        binary_path=Path(f"/usr/bin/{kind.value}") if binary else None,
        storage_driver=driver,
        storage_root=Path(root),
        can_read=can_read,
    )


def test_archive_path_needs_no_probe(tmp_path, app_layers):
    path = build_docker_save(tmp_path / "app.tar", app_layers)
    inspector = select_inspector(None, InspectConfig(), str(path))
    assert isinstance(inspector, ArchiveInspector)

    # Archive-looking names are routed even before the file exists
    assert isinstance(select_inspector(None, None, "later.tgz"), ArchiveInspector)


def test_readable_overlay_storage_is_preferred():
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.DOCKER)])
    inspector = select_inspector(probe, InspectConfig(), "nginx:latest")
    assert isinstance(inspector, OverlayInspector)
    assert isinstance(inspector, Inspector)


def test_unreadable_storage_uses_export(caplog):
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.DOCKER, can_read=False)])
    with caplog.at_level(logging.INFO, logger="peel.core.selection"):
        inspector = select_inspector(probe, InspectConfig(), "nginx:latest")
    assert isinstance(inspector, ExportInspector)
    assert "not readable" in caplog.text


def test_unwalkable_driver_uses_export():
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.PODMAN, driver=StorageDriver.BTRFS)])
    assert isinstance(select_inspector(probe, InspectConfig(), "app"), ExportInspector)


def test_containerd_always_exports():
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.CONTAINERD)])
    inspector = select_inspector(
        probe, InspectConfig(containerd_namespace="k8s.io", export_timeout=5), "app"
    )
    assert isinstance(inspector, ExportInspector)
    assert inspector.namespace == "k8s.io"
    assert inspector.timeout == 5


def test_no_backend_available():
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.DOCKER, can_read=False, binary=False)])
    with pytest.raises(SourceError, match="no executable"):
        select_inspector(probe, InspectConfig(), "nginx")


def test_no_runtime_detected():
    with pytest.raises(SourceError, match="No container runtime detected"):
        select_inspector(ProbeResult(), InspectConfig(), "nginx")
    with pytest.raises(SourceError):
        select_inspector(None, InspectConfig(), "nginx")


def test_backend_override():
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.DOCKER)])
    inspector = select_inspector(probe, InspectConfig(backend=Backend.EXPORT), "nginx")
    assert isinstance(inspector, ExportInspector)

    inspector = select_inspector(probe, InspectConfig(backend=Backend.ARCHIVE), "nginx")
    assert isinstance(inspector, ArchiveInspector)


def test_overlay_override_on_unwalkable_storage_fails():
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.CONTAINERD)])
    with pytest.raises(SourceError):
        select_inspector(probe, InspectConfig(backend=Backend.OVERLAY), "nginx")


def test_runtime_override():
    probe = ProbeResult.from_runtimes(
        [_runtime(RuntimeKind.DOCKER), _runtime(RuntimeKind.PODMAN)]
    )
    assert choose_runtime(probe, InspectConfig()).kind == RuntimeKind.DOCKER
    assert choose_runtime(probe, InspectConfig(runtime=RuntimeKind.PODMAN)).kind == (
        RuntimeKind.PODMAN
    )
    with pytest.raises(SourceError, match="containerd was not detected"):
        choose_runtime(probe, InspectConfig(runtime=RuntimeKind.CONTAINERD))


def test_unreadable_runtimes_fall_back_to_priority():
    probe = ProbeResult.from_runtimes(
        [
            _runtime(RuntimeKind.CONTAINERD, can_read=False),
            _runtime(RuntimeKind.PODMAN, can_read=False),
        ]
    )
    assert probe.default is None
    assert choose_runtime(probe, InspectConfig()).kind == RuntimeKind.PODMAN


def test_storage_root_override(tmp_path, app_layers):
    build_docker_storage(tmp_path, app_layers)
    probe = ProbeResult.from_runtimes([_runtime(RuntimeKind.DOCKER, can_read=False)])

    inspector = select_inspector(probe, InspectConfig(storage_root=tmp_path), "app:1.0")

    assert isinstance(inspector, OverlayInspector)
    assert inspector.storage_root == tmp_path


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("PEEL_BACKEND", "Export")
    monkeypatch.setenv("PEEL_RUNTIME", "podman")
    monkeypatch.setenv("PEEL_STORAGE_ROOT", "/srv/containers")
    monkeypatch.setenv("PEEL_EXPORT_TIMEOUT", "42.5")
    monkeypatch.setenv("PEEL_CONTAINERD_NAMESPACE", "k8s.io")

    config = InspectConfig.from_env()

    assert config.backend == Backend.EXPORT
    assert config.runtime == RuntimeKind.PODMAN
    assert config.storage_root == Path("/srv/containers")
    assert config.export_timeout == 42.5
    assert config.containerd_namespace == "k8s.io"


def test_config_from_env_defaults(monkeypatch):
    for name in ("PEEL_BACKEND", "PEEL_RUNTIME", "PEEL_STORAGE_ROOT", "PEEL_EXPORT_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("PEEL_CONTAINERD_NAMESPACE", raising=False)
    assert InspectConfig.from_env() == InspectConfig()

    monkeypatch.setenv("PEEL_EXPORT_TIMEOUT", "soon")
    with pytest.raises(ValueError, match="PEEL_EXPORT_TIMEOUT"):
        InspectConfig.from_env()


@pytest.mark.asyncio
async def test_inspect_image_archive(tmp_path, app_layers):
    path = build_docker_save(tmp_path / "app.tar", app_layers)
    image = await inspect_image(str(path))
    assert image.source == "archive"
    assert resolved_map(image.merged.resolved()) == {"app/main": 120}

    layers = await list_layers(str(path))
    assert len(layers) == 2


@pytest.mark.asyncio
async def test_inspect_image_with_probe(tmp_path, app_layers):
    build_docker_storage(tmp_path, app_layers)
    probe = ProbeResult.from_runtimes([overlay_runtime(tmp_path)])

    image = await inspect_image("app:1.0", probe=probe)

    assert image.source == "overlay"
    assert image.total_size == 120


@pytest.mark.asyncio
async def test_inspect_image_probes_when_needed(tmp_path, app_layers, monkeypatch):
    build_docker_storage(tmp_path, app_layers)
    calls = []

    async def fake_probe(config=None):
        calls.append(config)
        return ProbeResult.from_runtimes([overlay_runtime(tmp_path)])

    monkeypatch.setattr("peel.inspect._probe_runtimes", fake_probe)

    layers = await list_layers("app:1.0")

    assert len(calls) == 1
    assert len(layers) == 2
