# kubepool/utils/network.py

import asyncio
import logging
from typing import Tuple

logger = logging.getLogger(__name__)


def split_endpoint(endpoint: str, default_port: int = 6443) -> Tuple[str, int]:
    """
    Split `host[:port]` (with an optional scheme) into host and port.

    Raises:
        ValueError: If the host is empty or the port is not an integer.
    """
    value = endpoint.strip()
    if "://" in value:
        value = value.split("://", 1)[1]
    value = value.split("/", 1)[0]

    host, sep, port_str = value.rpartition(":")
    if not sep:
        host, port = value, default_port
    else:
        port = int(port_str)
    if not host:
        raise ValueError(f"Invalid endpoint '{endpoint}'")
    return host, port


async def check_tcp_endpoint(
    endpoint: str, timeout: float = 10.0, default_port: int = 6443
) -> bool:
    """True if a TCP connection to `endpoint` succeeds within `timeout` seconds."""
    try:
        host, port = split_endpoint(endpoint, default_port)
    except ValueError as ex:
        logger.warning("Cannot parse endpoint '%s': %s", endpoint, ex)
        return False

    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError) as ex:
        logger.info("Endpoint %s:%d is not reachable: %s", host, port, ex)
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
