"""aiohttp sessions bound to a runtime's unix socket."""

import aiohttp

# Host part is ignored when talking over a unix socket
SOCKET_BASE_URL = "http://localhost"


async def create_session(socket_path: str, timeout: float = 5.0) -> aiohttp.ClientSession:
    """Create a client session that sends every request to `socket_path`.

    Args:
        socket_path: Path of the runtime API socket
        timeout: Total request timeout in seconds

    Returns:
        An open aiohttp.ClientSession; the caller closes it
    """
    connector = aiohttp.UnixConnector(path=socket_path)
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout),
    )
