"""Managed server protocol and an HTTP server adapter with force-close support."""

import logging
import socket
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Condition, Thread
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ManagedServer(Protocol):
    """
    Protocol for a network server whose shutdown is coordinated externally.

    The coordinator never creates or destroys the server; it only asks it
    to stop, and force-closes it when a bounded stop takes too long.
    """

    def shutdown(self, timeout: float) -> None:
        """
        Stop accepting new connections and wait for active ones to finish.

        Args:
            timeout: Maximum seconds to wait for in-flight work.

        Raises:
            TimeoutError: If active connections remain when the timeout ends.
        """
        ...

    def close(self) -> None:
        """
        Force-close the listener and all connections the server tracks.

        Safe to call multiple times.
        """
        ...


class TrackingHTTPServer(ThreadingHTTPServer):
    """
    Threading HTTP server that keeps track of in-flight request sockets.

    Tracking lets a shutdown wait until the server is idle, and lets a
    force-close hang up connections that are still being served.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(
        self,
        server_address: tuple[str, int],
        handler_class: type[BaseHTTPRequestHandler],
        bind_and_activate: bool = True,
    ) -> None:
        self._connections: set[socket.socket] = set()
        self._connections_changed = Condition()
        super().__init__(server_address, handler_class, bind_and_activate)

    def process_request(self, request: socket.socket, client_address) -> None:
        with self._connections_changed:
            self._connections.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request: socket.socket) -> None:
        try:
            super().shutdown_request(request)
        finally:
            with self._connections_changed:
                self._connections.discard(request)
                self._connections_changed.notify_all()

    def handle_error(self, request: socket.socket, client_address) -> None:
        # Requests hung up by a force-close land here.
        logger.debug(f"Error handling request from {client_address}", exc_info=True)

    @property
    def active_connections(self) -> int:
        """Number of requests currently being served."""
        with self._connections_changed:
            return len(self._connections)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no requests are in flight.

        Args:
            timeout: Maximum seconds to wait (None = forever).

        Returns:
            True if the server became idle, False on timeout.
        """
        with self._connections_changed:
            return self._connections_changed.wait_for(
                lambda: not self._connections, timeout
            )

    def close_connections(self) -> int:
        """
        Hang up every tracked connection.

        Returns:
            Number of connections hung up.
        """
        with self._connections_changed:
            connections = list(self._connections)
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Already closed by its handler thread
                continue
        return len(connections)


class HTTPServerAdapter:
    """
    Runs a TrackingHTTPServer and exposes it as a ManagedServer.

    Usage:
        adapter = HTTPServerAdapter(TrackingHTTPServer(("127.0.0.1", 0), Handler))
        adapter.start()
        coordinator.set_server_and_watch(adapter)
    """

    def __init__(self, server: TrackingHTTPServer, poll_interval: float = 0.5) -> None:
        """
        Initialize the adapter.

        Args:
            server: Bound server to run.
            poll_interval: Seconds between shutdown checks of the serve loop.
        """
        self._server = server
        self._poll_interval = poll_interval
        self._serve_thread: Optional[Thread] = None

    @property
    def server_address(self) -> tuple[str, int]:
        """Host and port the server is bound to."""
        host, port = self._server.server_address[:2]
        return host, port

    @property
    def url(self) -> str:
        """Base URL of the server (e.g., http://127.0.0.1:8080)."""
        host, port = self.server_address
        return f"http://{host}:{port}"

    @property
    def is_serving(self) -> bool:
        """Check if the serve loop is running."""
        return self._serve_thread is not None and self._serve_thread.is_alive()

    def start(self) -> None:
        """
        Start serving on a background thread.

        Raises:
            RuntimeError: If the server was already started.
        """
        if self._serve_thread is not None:
            raise RuntimeError("Server already started")
        self._serve_thread = Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": self._poll_interval},
            name="gracefulstop-http",
            daemon=True,
        )
        self._serve_thread.start()
        logger.info(f"Serving HTTP on {self.url}")

    def shutdown(self, timeout: float) -> None:
        """
        Stop the serve loop, close the listener and wait for in-flight requests.

        Raises:
            TimeoutError: If the serve loop or active requests outlive the timeout.
        """
        deadline = time.monotonic() + timeout

        if self.is_serving:
            stopper = Thread(target=self._server.shutdown, name="gracefulstop-http-stop", daemon=True)
            stopper.start()
            stopper.join(timeout)
            if stopper.is_alive():
                raise TimeoutError(f"Serve loop did not stop within {timeout}s")
            self._serve_thread.join(max(0.0, deadline - time.monotonic()))

        self._server.server_close()

        remaining = max(0.0, deadline - time.monotonic())
        if not self._server.wait_idle(remaining):
            raise TimeoutError(
                f"{self._server.active_connections} connection(s) still active after {timeout}s"
            )

    def close(self) -> None:
        """Close the listener and hang up every tracked connection."""
        if self.is_serving:
            # Ask the loop to stop without waiting for it
            Thread(target=self._server.shutdown, name="gracefulstop-http-stop", daemon=True).start()
        self._server.server_close()
        closed = self._server.close_connections()
        logger.info(f"Force-closed {closed} connection(s)")


__all__ = [
    'ManagedServer',
    'TrackingHTTPServer',
    'HTTPServerAdapter',
]
