"""One-shot stop signals and OS signal delivery."""

import logging
import os
import queue
import signal
import threading
from threading import Event, Lock
from types import FrameType
from typing import Callable, Iterable, Optional, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)

# SIGKILL cannot be caught by any process, so it is never subscribed.
TERMINATION_SIGNALS: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)

_SignalHandler = Union[Callable[[int, Optional[FrameType]], object], int, None]


def signal_name(signum: int) -> str:
    """Return a readable name such as 'SIGTERM' for a signal number."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class StopSignal:
    """
    Broadcast signal that can be fired at most once.

    Any number of threads may wait on it. Firing is idempotent: only the
    first call to fire() performs the transition, later calls are no-ops.
    """

    def __init__(self) -> None:
        self._event = Event()
        self._lock = Lock()

    def fire(self) -> bool:
        """
        Fire the signal, waking every waiter.

        Returns:
            True if this call fired the signal, False if it was already fired.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    @property
    def fired(self) -> bool:
        """Check if the signal has been fired."""
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the signal fires.

        Args:
            timeout: Maximum seconds to wait (None = forever).

        Returns:
            True if the signal fired, False on timeout.
        """
        return self._event.wait(timeout)


class SignalSink:
    """
    Receives delivered signal numbers, buffered to depth 1.

    offer() never blocks and takes no locks, so it is safe to call from a
    signal handler. A signal arriving while one is already pending is dropped.
    The depth check and the put are separate steps, so depth 1 holds for one
    delivering thread at a time; signal handlers only ever run on the main
    thread, other deliverers must serialize their offers.
    """

    def __init__(self) -> None:
        # SimpleQueue.put() is reentrant, Queue.put() is not.
        self._queue: "queue.SimpleQueue[Optional[int]]" = queue.SimpleQueue()

    def offer(self, signum: int) -> bool:
        """
        Deliver a signal number without blocking.

        Returns:
            True if buffered, False if dropped because one is already pending.
        """
        if self._queue.qsize() >= 1:
            return False
        self._queue.put(signum)
        return True

    def wake(self) -> None:
        """Wake a blocked get() without delivering a signal; get() returns None."""
        self._queue.put(None)

    @property
    def pending(self) -> bool:
        """Check if a signal or wake-up is waiting to be taken."""
        return not self._queue.empty()

    def get(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Take the pending signal number.

        Args:
            timeout: Maximum seconds to wait (None = forever).

        Returns:
            The signal number, or None on timeout or wake().
        """
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


@runtime_checkable
class SignalNotifier(Protocol):
    """
    Protocol for subscribing a sink to process signals.

    Implementations deliver each received signal to the subscribed sinks
    via SignalSink.offer() and must never block the delivering side.
    """

    def notify(self, sink: SignalSink, signums: Iterable[int]) -> None:
        """
        Subscribe a sink to the given signal numbers.

        Raises:
            ValueError: If the subscription cannot be made from this thread.
        """
        ...

    def stop(self) -> None:
        """Stop delivering signals and undo any subscriptions. Safe to call multiple times."""
        ...


class OsSignalNotifier:
    """
    Delivers OS signals to sinks through signal.signal handlers.

    Handlers can only be installed from the main thread, so a notifier built
    there installs them right away. Until a sink is subscribed, a received
    signal is handed on to the handler that was replaced, so the process
    behaves as if nothing were installed. notify() then works from any thread.

    A notifier built off the main thread installs lazily in notify(), which
    raises ValueError unless called from the main thread. stop() restores
    the handlers that were replaced and must run on the main thread.
    """

    def __init__(self, signums: Iterable[int] = TERMINATION_SIGNALS) -> None:
        """
        Initialize the notifier.

        Args:
            signums: Signals to take over right away when on the main thread.
        """
        self._sinks: dict[int, list[SignalSink]] = {}
        self._original_handlers: dict[int, _SignalHandler] = {}
        self._lock = Lock()
        if threading.current_thread() is threading.main_thread():
            self._install(signums)

    def _install(self, signums: Iterable[int]) -> None:
        for signum in signums:
            if signum not in self._original_handlers:
                self._original_handlers[signum] = signal.signal(signum, self._handle_signal)
                logger.debug(f"Installed handler for {signal_name(signum)}")

    def notify(self, sink: SignalSink, signums: Iterable[int]) -> None:
        """Subscribe sink to signums, installing any handler still missing."""
        signums = list(signums)
        with self._lock:
            self._install(signums)
            for signum in signums:
                # Replace rather than append: the handler reads without the lock
                self._sinks[signum] = self._sinks.get(signum, []) + [sink]

    def _handle_signal(self, signum: int, frame: Optional[FrameType]) -> None:
        """Forward a received signal to subscribed sinks, or to the replaced handler."""
        sinks = self._sinks.get(signum)
        if sinks:
            for sink in sinks:
                sink.offer(signum)
            return

        original = self._original_handlers.get(signum)
        if callable(original):
            original(signum, frame)
        elif original == signal.SIG_IGN:
            return
        else:
            # Default action: put it back and re-raise the signal
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    def stop(self) -> None:
        """Restore original signal handlers."""
        with self._lock:
            for signum, handler in self._original_handlers.items():
                signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
            if self._original_handlers:
                logger.debug("Restored original signal handlers")
            self._original_handlers.clear()
            self._sinks.clear()


class ManualSignalNotifier:
    """
    Notifier whose signals are delivered by calling deliver().

    Used by tests and by hosts that route process signals themselves.
    deliver() may be called from any thread.
    """

    def __init__(self) -> None:
        self._sinks: dict[int, list[SignalSink]] = {}
        self._lock = Lock()

    def notify(self, sink: SignalSink, signums: Iterable[int]) -> None:
        with self._lock:
            for signum in signums:
                self._sinks.setdefault(signum, []).append(sink)

    def deliver(self, signum: int = signal.SIGTERM) -> int:
        """
        Offer a signal to every sink subscribed to it.

        Returns:
            Number of sinks that accepted the signal.
        """
        with self._lock:
            return sum(1 for sink in self._sinks.get(signum, ()) if sink.offer(signum))

    @property
    def subscribed(self) -> set[int]:
        """Signal numbers with at least one subscribed sink."""
        with self._lock:
            return set(self._sinks)

    def stop(self) -> None:
        with self._lock:
            self._sinks.clear()
