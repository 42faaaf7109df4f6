"""Example usage of the async layer inspection API."""

import asyncio
import logging
import sys

# Add parent directory to path
sys.path.insert(0, "src")

from peel import InspectConfig, PeelError, inspect_image, list_layers, probe_runtimes
from peel.output import format_bytes, format_probe, format_summary, write_json

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main(image: str):
    """Probe the host, then inspect one image."""
    config = InspectConfig.from_env()

    try:
        logger.info("Probing container runtimes...")
        probe = await probe_runtimes(config)
        print(format_probe(probe))

        # Reuse the probe so the runtimes are only queried once
        info = await inspect_image(image, config=config, probe=probe)
        print(format_summary(info))

        # Files the final image no longer contains
        for delta in info.merged.deltas:
            for entry in delta.deleted:
                logger.info(f"Layer {delta.index} removed {entry.path}")

    except PeelError as e:
        logger.error(f"Inspection failed: {e}")
        return 1
    return 0


async def largest_layers(image: str, limit: int = 3):
    """Example of listing layers without merging them."""
    layers = await list_layers(image)
    for layer in sorted(layers, key=lambda layer: layer.size, reverse=True)[:limit]:
        logger.info(f"{layer.digest[:19]}  {format_bytes(layer.size):>10}  {layer.created_by}")


async def save_report(image: str, destination: str):
    """Write the JSON document for an image."""
    info = await inspect_image(image)
    await write_json(info, destination)


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else "alpine:latest"
    sys.exit(asyncio.run(main(target)))
