"""Local TCP listener that pipes each connection to an upstream socket."""

import select
import socket
import socketserver
import threading
import time
from collections.abc import Callable
from contextlib import closing

from ..common.exceptions import EngineError
from ..common.logging import get_logger

logger = get_logger(__name__)

BUFFER_SIZE = 16384
SELECT_TIMEOUT = 1.0

UpstreamFactory = Callable[[], socket.socket]


def pipe(
    downstream: socket.socket, upstream: socket.socket, stop_event: threading.Event
) -> None:
    """Copy bytes both ways until either side closes or ``stop_event`` is set."""
    sockets = [downstream, upstream]
    while not stop_event.is_set():
        readable, _, _ = select.select(sockets, [], [], SELECT_TIMEOUT)
        for source in readable:
            data = source.recv(BUFFER_SIZE)
            if not data:
                return
            target = upstream if source is downstream else downstream
            target.sendall(data)


class _PipeHandler(socketserver.BaseRequestHandler):
    server: "ForwardingServer"

    def handle(self) -> None:
        peer = self.client_address
        try:
            upstream = self.server.open_upstream()
        except (EngineError, OSError) as e:
            logger.error(
                "Failed to open upstream connection", peer=str(peer), error=str(e)
            )
            return

        self.server.connection_opened()
        try:
            with closing(upstream):
                pipe(self.request, upstream, self.server.stop_event)
        except OSError as e:
            logger.debug("Connection closed with error", peer=str(peer), error=str(e))
        finally:
            self.server.connection_closed()


class ForwardingServer(socketserver.ThreadingTCPServer):
    """Threaded listener; ``shutdown`` stops accepting, ``drain`` waits for pipes."""

    allow_reuse_address = True
    daemon_threads = False
    block_on_close = True

    def __init__(self, address: tuple[str, int], open_upstream: UpstreamFactory):
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        self.open_upstream = open_upstream
        self.stop_event = threading.Event()
        self._active = 0
        self._active_lock = threading.Lock()
        super().__init__(address, _PipeHandler)

    @property
    def active_connections(self) -> int:
        return self._active

    def connection_opened(self) -> None:
        with self._active_lock:
            self._active += 1

    def connection_closed(self) -> None:
        with self._active_lock:
            self._active -= 1

    def drain(self, timeout: float) -> bool:
        """Wait for open connections to finish, then cut the remaining ones.

        Returns:
            True if every connection finished on its own
        """
        deadline = time.monotonic() + timeout
        while self._active > 0 and time.monotonic() < deadline:
            time.sleep(0.1)

        drained = self._active == 0
        if not drained:
            logger.warning("Closing connections still open", count=self._active)
        self.stop_event.set()
        return drained
