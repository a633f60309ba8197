"""Local TCP port allocation."""

import socket
from contextlib import ExitStack

from .exceptions import PortAllocationError
from .logging import get_logger

logger = get_logger(__name__)


def _bind_ephemeral(host: str) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        sock.listen(1)
    except OSError:
        sock.close()
        raise
    return sock


def allocate_port(host: str = "localhost") -> int:
    """Find a free local TCP port.

    The port is released before returning, so another process may still grab
    it; the forwarding engine's own bind is authoritative and fails loudly.

    Args:
        host: Local address the port will be bound on

    Returns:
        Port number assigned by the operating system

    Raises:
        PortAllocationError: If no socket could be bound
    """
    try:
        with _bind_ephemeral(host) as sock:
            port: int = sock.getsockname()[1]
    except OSError as e:
        raise PortAllocationError(f"Failed to find open port on {host}: {e}") from e

    logger.debug("Allocated local port", host=host, port=port)
    return port


def allocate_ports(count: int, host: str = "localhost") -> list[int]:
    """Allocate several distinct free ports at once.

    Every socket stays bound until all ports are known, so no port can be
    returned twice.
    """
    if count < 1:
        raise ValueError("count must be at least 1")

    try:
        with ExitStack() as stack:
            sockets = [
                stack.enter_context(_bind_ephemeral(host)) for _ in range(count)
            ]
            ports = [sock.getsockname()[1] for sock in sockets]
    except OSError as e:
        raise PortAllocationError(f"Failed to find open ports on {host}: {e}") from e

    logger.debug("Allocated local ports", host=host, ports=ports)
    return ports
