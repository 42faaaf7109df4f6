"""Async functional inspection API."""

import logging
from typing import Optional

from .core.probe import probe_runtimes as _probe_runtimes
from .core.selection import select_inspector
from .core.types import Backend, InspectConfig, ProbeResult
from .inspectors.archive import looks_like_archive
from .inspectors.base import Inspector
from .models import ImageInfo, LayerInfo

logger = logging.getLogger(__name__)


async def probe_runtimes(config: Optional[InspectConfig] = None) -> ProbeResult:
    """Detect the container runtimes installed on this host.

    Args:
        config: Probe settings (command timeout); defaults apply when omitted

    Returns:
        ProbeResult: Every detected runtime and the default one

    Examples:
        probe = await probe_runtimes()
        print(format_probe(probe))
    """
    return await _probe_runtimes(config)


async def _inspector_for(
    image: str, config: InspectConfig, probe: Optional[ProbeResult]
) -> Inspector:
    archive = config.backend == Backend.ARCHIVE or (
        config.backend is None and looks_like_archive(image)
    )
    if probe is None and not archive:
        probe = await _probe_runtimes(config)
    return select_inspector(probe, config, image)


async def inspect_image(
    image: str,
    config: Optional[InspectConfig] = None,
    probe: Optional[ProbeResult] = None,
) -> ImageInfo:
    """Inspect an image reference or archive path.

    Args:
        image: Reference ("nginx:alpine", an image id) or archive path
        config: Backend/runtime overrides
        probe: Reuse an earlier probe instead of probing again

    Returns:
        ImageInfo: Layers oldest first; `merged` holds the resolved view

    Raises:
        SourceError: If no backend can read the image, or the chosen one fails

    Examples:
        info = await inspect_image("nginx:alpine")
        print(f"{len(info.layers)} layers, {info.total_size} bytes")

        info = await inspect_image("./nginx.tar")
    """
    config = config or InspectConfig()
    inspector = await _inspector_for(image, config, probe)
    logger.debug("Inspecting %s with %s backend", image, inspector.name)
    return await inspector.inspect(image)


async def list_layers(
    image: str,
    config: Optional[InspectConfig] = None,
    probe: Optional[ProbeResult] = None,
) -> list[LayerInfo]:
    """Return the layers of an image, oldest first.

    Examples:
        for layer in await list_layers("alpine:3.19"):
            print(layer.digest, layer.size)
    """
    config = config or InspectConfig()
    inspector = await _inspector_for(image, config, probe)
    return await inspector.list_layers(image)
