"""
Graceful shutdown coordination for long-running server processes.

GracefulStop waits for SIGINT/SIGTERM (or an explicit abort), then runs a
bounded shutdown sequence exactly once:

- Shut down the managed server, force-closing it if the shutdown times out
- Fire every registered subsystem stop signal
- Wait a grace period so subsystems can clean up
- Report completion to everyone blocked in wait()
"""

import logging
import time
from threading import Lock, Thread
from typing import Optional

from .server import ManagedServer
from .signals import (
    TERMINATION_SIGNALS,
    OsSignalNotifier,
    SignalNotifier,
    SignalSink,
    StopSignal,
    signal_name,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

# Server drain is expected to dominate the subsystem grace period.
SERVER_SHUTDOWN_TIMEOUT = 15.0


class GracefulStop:
    """
    Coordinates a one-time graceful shutdown.

    Subsystems register a StopSignal with add() and watch it to know when
    to wind down. A managed server is attached with set_server(). watch()
    starts listening for termination signals; it may be called any number
    of times from any thread, only the first call has effect.

    Usage:
        gs = GracefulStop(capacity=2, timeout=5.0)
        worker_stop = gs.add()
        gs.set_server_and_watch(adapter)
        gs.wait()
    """

    def __init__(
        self,
        capacity: int = 0,
        timeout: float = DEFAULT_TIMEOUT,
        *,
        notifier: Optional[SignalNotifier] = None,
        server_timeout: float = SERVER_SHUTDOWN_TIMEOUT,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            capacity: Expected number of subsystems (sizing hint only).
            timeout: Grace period in seconds after firing subsystem stop
                signals (0 = no grace period).
            notifier: Delivers termination signals (default: OS signal handlers).
            server_timeout: Seconds the managed server gets to shut down
                before it is force-closed.

        Raises:
            ValueError: If timeout or server_timeout is negative.
        """
        if timeout < 0:
            raise ValueError("timeout cannot be negative")
        if server_timeout < 0:
            raise ValueError("server_timeout cannot be negative")

        self._capacity = capacity
        self._timeout = timeout
        self._server_timeout = server_timeout
        self._notifier: SignalNotifier = notifier if notifier is not None else OsSignalNotifier()

        self._stop_sinks: list[StopSignal] = []
        self._server: Optional[ManagedServer] = None

        self._signal_sink = SignalSink()
        self._break_signal = StopSignal()
        self._done_signal = StopSignal()

        self._started = False
        self._started_lock = Lock()
        self._watch_thread: Optional[Thread] = None

    @property
    def timeout(self) -> float:
        """Grace period in seconds applied after stop signals fire."""
        return self._timeout

    @property
    def started(self) -> bool:
        """Check if the watch loop has been activated."""
        with self._started_lock:
            return self._started

    @property
    def aborted(self) -> bool:
        """Check if abort() has been called."""
        return self._break_signal.fired

    @property
    def done(self) -> bool:
        """Check if the shutdown sequence has completed."""
        return self._done_signal.fired

    def add(self, sink: Optional[StopSignal] = None) -> StopSignal:
        """
        Register a subsystem stop signal.

        Args:
            sink: Signal to fire at shutdown (a new one is created if None).

        Returns:
            The registered signal, for the subsystem to wait on.
        """
        if sink is None:
            sink = StopSignal()
        self._stop_sinks.append(sink)
        return sink

    def set_server(self, server: ManagedServer) -> None:
        """Attach the managed server, replacing any previous one."""
        self._server = server

    def set_server_and_watch(self, server: ManagedServer) -> None:
        """Attach the managed server and make sure the watch loop is running."""
        self.set_server(server)
        self.watch()

    def abort(self) -> None:
        """
        Stop watching without running the shutdown sequence.

        Only effective before a termination signal is received. Safe to
        call multiple times and from multiple threads.
        """
        if self._break_signal.fire():
            self._signal_sink.wake()
            logger.info("Shutdown watch aborted")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the shutdown sequence completes.

        Returns immediately if watch() was never called.

        Args:
            timeout: Maximum seconds to wait (None = forever).

        Returns:
            True if the sequence completed (or was never started),
            False on timeout.
        """
        if not self.started:
            return True
        return self._done_signal.wait(timeout)

    def watch(self) -> None:
        """
        Start watching for termination signals.

        Only the first call starts the watch loop; later and concurrent
        calls return immediately.
        """
        with self._started_lock:
            if self._started:
                return
            self._started = True

        # Subscribe before the loop starts so no signal slips in between. The
        # default notifier installs its handlers when built on the main
        # thread, so this works from any thread.
        try:
            self._notifier.notify(self._signal_sink, TERMINATION_SIGNALS)
        except ValueError as e:
            logger.error(f"Cannot subscribe to termination signals, only abort() will end the watch: {e}")

        self._watch_thread = Thread(target=self._watch, name="gracefulstop-watch", daemon=True)
        self._watch_thread.start()
        logger.debug(
            f"Watching for termination signals "
            f"({len(self._stop_sinks)} of {self._capacity} expected subsystem(s) registered)"
        )

    def _watch(self) -> None:
        """Wait for a termination signal or abort, then run the shutdown sequence."""
        signum = self._wait_for_trigger()
        if signum is None:
            return

        logger.info(f"Received {signal_name(signum)}, initiating graceful shutdown...")
        self._shutdown()

    def _wait_for_trigger(self) -> Optional[int]:
        """
        Wait for the first of a termination signal or abort().

        Returns:
            The received signal number, or None if aborted first.
        """
        while not self._break_signal.fired:
            # Blocks until a signal arrives or abort() wakes the sink
            signum = self._signal_sink.get()
            if signum is not None:
                return signum
        return None

    def _shutdown(self) -> None:
        """Run the shutdown sequence. Called once, from the watch thread."""
        server = self._server
        if server is not None:
            self._shutdown_server(server)

        for sink in self._stop_sinks:
            if not sink.fire():
                logger.debug("Stop signal was already fired")

        if self._timeout > 0 and self._stop_sinks:
            logger.info(
                f"Waiting {self._timeout}s for {len(self._stop_sinks)} subsystem(s) to stop"
            )
            time.sleep(self._timeout)

        self._done_signal.fire()
        logger.info("Graceful shutdown complete")

    def _shutdown_server(self, server: ManagedServer) -> None:
        """Shut down the server within server_timeout, force-closing on timeout."""
        logger.info("Shutdown server ...")
        try:
            server.shutdown(self._server_timeout)
        except TimeoutError as e:
            logger.error(f"Server shutdown error: {e}")
            logger.warning("Forcing server shutdown...")
            # Connections the server does not track are not hung up by close()
            try:
                server.close()
            except Exception as close_error:
                logger.error(f"Server force-close error: {close_error}", exc_info=True)
        except Exception as e:
            logger.error(f"Server shutdown error: {e}", exc_info=True)
        logger.info("Server stopped")


__all__ = [
    'GracefulStop',
    'DEFAULT_TIMEOUT',
    'SERVER_SHUTDOWN_TIMEOUT',
]
