"""
Example server process with graceful shutdown.

This module wires together:
- A TrackingHTTPServer answering status requests
- A heartbeat subsystem that runs until its stop signal fires
- A GracefulStop coordinator driving shutdown on SIGINT/SIGTERM
"""

import argparse
import json
import logging
import sys
from http.server import BaseHTTPRequestHandler
from pathlib import Path
from threading import Thread
from typing import Optional

from .coordinator import DEFAULT_TIMEOUT, SERVER_SHUTDOWN_TIMEOUT, GracefulStop
from .logging_config import LOG_LEVELS, setup_logging
from .server import HTTPServerAdapter, TrackingHTTPServer
from .signals import OsSignalNotifier, SignalNotifier, StopSignal

logger = logging.getLogger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Run an HTTP status server that shuts down gracefully on SIGINT/SIGTERM"
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port to bind, 0 picks a free port (default: 8080)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f"Grace period in seconds for subsystems to stop (default: {DEFAULT_TIMEOUT})"
    )
    parser.add_argument(
        "--server-timeout",
        type=float,
        default=SERVER_SHUTDOWN_TIMEOUT,
        help=f"Seconds to drain the server before force-closing (default: {SERVER_SHUTDOWN_TIMEOUT})"
    )
    parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=1.0,
        help="Seconds between heartbeat log lines (default: 1.0)"
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="INFO",
        help="Set logging level (default: INFO)"
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Optional log file path for persistent logging"
    )
    return parser


class StatusHandler(BaseHTTPRequestHandler):
    """Answers every GET with a JSON status document."""

    def do_GET(self) -> None:
        body = json.dumps({"status": "ok"}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:
        logger.debug(f"{self.address_string()} - {format % args}")


class Heartbeat:
    """
    Subsystem that logs a heartbeat until its stop signal fires.

    Stands in for any worker that must wind down when the process stops.
    """

    def __init__(self, stop_signal: StopSignal, interval: float = 1.0) -> None:
        """
        Initialize the heartbeat.

        Args:
            stop_signal: Fired by the coordinator at shutdown.
            interval: Seconds between heartbeats.
        """
        self._stop_signal = stop_signal
        self._interval = interval
        self._beats = 0
        self._thread: Optional[Thread] = None

    @property
    def beats(self) -> int:
        """Number of heartbeats logged so far."""
        return self._beats

    def start(self) -> None:
        self._thread = Thread(target=self._run, name="heartbeat", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        # Interruptible wait using the stop signal
        while not self._stop_signal.wait(timeout=self._interval):
            self._beats += 1
            logger.info(f"Heartbeat {self._beats}")
        logger.info(f"Heartbeat stopped after {self._beats} beat(s)")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class ServiceRunner:
    """
    Runs the HTTP server and heartbeat until a graceful shutdown completes.

    Responsibilities:
    - Start the heartbeat subsystem and the HTTP server
    - Hand both to the coordinator and block until shutdown is done
    - Restore signal handlers on the way out
    """

    def __init__(
        self,
        coordinator: GracefulStop,
        adapter: HTTPServerAdapter,
        notifier: SignalNotifier,
        heartbeat_interval: float = 1.0,
    ) -> None:
        """
        Initialize the runner.

        Args:
            coordinator: Coordinator built with the same notifier.
            adapter: Server to start and shut down.
            notifier: Signal notifier to stop once shutdown completes.
            heartbeat_interval: Seconds between heartbeats.
        """
        self._coordinator = coordinator
        self._adapter = adapter
        self._notifier = notifier
        self._heartbeat = Heartbeat(coordinator.add(), heartbeat_interval)

    @property
    def heartbeat(self) -> Heartbeat:
        return self._heartbeat

    def run(self) -> None:
        """Serve until SIGINT/SIGTERM, then wait for the graceful shutdown."""
        self._heartbeat.start()
        self._adapter.start()
        logger.info(f"Serving on {self._adapter.url} (Ctrl+C to stop)")

        try:
            self._coordinator.set_server_and_watch(self._adapter)
            self._coordinator.wait()
        finally:
            self._notifier.stop()

        self._heartbeat.join(timeout=1.0)
        logger.info(f"Shutdown complete. Heartbeat ran {self._heartbeat.beats} time(s)")


def main() -> int:
    """Main entry point."""
    args = create_argument_parser().parse_args()

    # Setup logging first
    setup_logging(level=args.log_level, log_file=args.log_file)

    try:
        server = TrackingHTTPServer((args.host, args.port), StatusHandler)
    except OSError as e:
        logger.error(f"Cannot bind {args.host}:{args.port}: {e}")
        return 1

    notifier = OsSignalNotifier()
    try:
        coordinator = GracefulStop(
            capacity=1,
            timeout=args.timeout,
            notifier=notifier,
            server_timeout=args.server_timeout,
        )
    except ValueError as e:
        logger.error(f"Invalid shutdown settings: {e}")
        notifier.stop()
        server.server_close()
        return 1

    runner = ServiceRunner(
        coordinator=coordinator,
        adapter=HTTPServerAdapter(server),
        notifier=notifier,
        heartbeat_interval=args.heartbeat_interval,
    )
    runner.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
