"""Daemon reachability checks."""

import asyncio
import logging
import os
from typing import Optional

import aiohttp

from .session import SOCKET_BASE_URL, create_session

logger = logging.getLogger(__name__)

API_VERSION_HEADERS = ("Api-Version", "Libpod-Api-Version")


def check_api_version_header(headers) -> Optional[str]:
    """Return the API version a Docker-compatible daemon advertises, if any."""
    for header in API_VERSION_HEADERS:
        value = headers.get(header)
        if value:
            return value
    return None


def validate_ping_response(status: int, body: str) -> bool:
    """A healthy daemon answers /_ping with 200 and "OK"."""
    return status == 200 and body.strip() == "OK"


async def check_daemon(socket_path: Optional[str], timeout: float = 5.0) -> bool:
    """Ping a Docker-compatible API over its unix socket.

    Args:
        socket_path: Path of the API socket
        timeout: Request timeout in seconds

    Returns:
        True if the daemon answered the ping
    """
    if not socket_path or not os.path.exists(socket_path):
        return False

    session = await create_session(socket_path, timeout)
    try:
        async with session.get(f"{SOCKET_BASE_URL}/_ping") as resp:
            body = await resp.text()
            healthy = validate_ping_response(resp.status, body)
            logger.debug(
                "Ping %s: status %d, api version %s",
                socket_path,
                resp.status,
                check_api_version_header(resp.headers),
            )
            return healthy
    except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
        logger.debug("Ping %s failed: %s", socket_path, e)
        return False
    finally:
        await session.close()


def socket_exists(socket_path: Optional[str]) -> bool:
    """Reachability for runtimes without an HTTP API (containerd speaks gRPC)."""
    return bool(socket_path) and os.path.exists(socket_path)
