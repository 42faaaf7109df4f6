"""Backend selection: pick the inspector that will read an image."""

import logging
from typing import Optional

from ..exceptions import SourceError
from ..inspectors.archive import ArchiveInspector, looks_like_archive
from ..inspectors.base import Inspector
from ..inspectors.export import ExportInspector
from ..inspectors.overlay import OverlayInspector
from .probe import with_storage_root
from .types import Backend, InspectConfig, ProbeResult, RuntimeInfo, RuntimeKind

logger = logging.getLogger(__name__)


def choose_runtime(probe: ProbeResult, config: InspectConfig) -> RuntimeInfo:
    """Runtime to read from: override, else probe default, else by priority.

    Raises:
        SourceError: If no runtime (or not the requested one) was detected
    """
    if config.runtime is not None:
        runtime = probe.get(config.runtime)
        if runtime is None:
            raise SourceError(f"Requested runtime {config.runtime.value} was not detected")
    elif probe.default_runtime is not None:
        runtime = probe.default_runtime
    elif probe.runtimes:
        runtime = min(probe.runtimes, key=lambda rt: rt.kind.priority)
    else:
        raise SourceError("No container runtime detected")

    if config.storage_root is not None:
        runtime = with_storage_root(runtime, config.storage_root)
    return runtime


def _export(runtime: RuntimeInfo, config: InspectConfig) -> ExportInspector:
    return ExportInspector(
        runtime,
        timeout=config.export_timeout,
        namespace=config.containerd_namespace,
    )


def select_inspector(
    probe: Optional[ProbeResult],
    config: Optional[InspectConfig] = None,
    image: Optional[str] = None,
) -> Inspector:
    """Choose the backend for `image`.

    Archive paths never need a probe. Otherwise an explicit backend wins;
    without one the overlay reader is used when the runtime's storage can be
    walked, and the runtime's export command when it cannot. There is no
    fallback: whichever backend is chosen reports its own failures.

    Args:
        probe: Result of probe_runtimes (may be None for archive paths)
        config: Overrides; defaults to no overrides
        image: Image reference or archive path

    Raises:
        SourceError: If no backend can serve the request
    """
    config = config or InspectConfig()

    if config.backend == Backend.ARCHIVE or (
        config.backend is None and image is not None and looks_like_archive(image)
    ):
        logger.info("Using archive backend: %s is an archive path", image)
        return ArchiveInspector(image)

    if probe is None:
        raise SourceError(f"Cannot select a backend for {image!r} without probing runtimes")
    runtime = choose_runtime(probe, config)

    if config.backend == Backend.OVERLAY:
        logger.info("Using overlay backend on %s: requested", runtime.kind.value)
        return OverlayInspector(runtime)
    if config.backend == Backend.EXPORT:
        logger.info("Using export backend on %s: requested", runtime.kind.value)
        return _export(runtime, config)

    if runtime.can_read and runtime.supports_direct_walk:
        logger.info(
            "Using overlay backend on %s: %s storage at %s is readable",
            runtime.kind.value,
            runtime.storage_driver.value,
            runtime.storage_root,
        )
        return OverlayInspector(runtime)

    if runtime.binary_path is not None:
        if not runtime.can_read:
            reason = f"storage root {runtime.storage_root} is not readable"
        elif runtime.kind == RuntimeKind.CONTAINERD:
            reason = "containerd storage is only reachable through export"
        else:
            reason = f"{runtime.storage_driver.value} storage cannot be walked"
        logger.info("Using export backend on %s: %s", runtime.kind.value, reason)
        return _export(runtime, config)

    raise SourceError(
        f"{runtime.kind.value} storage is unreadable and no executable was found for export"
    )
