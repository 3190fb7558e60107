"""Graceful shutdown coordination for long-running server processes."""

from .signals import (
    TERMINATION_SIGNALS,
    StopSignal,
    SignalSink,
    SignalNotifier,
    OsSignalNotifier,
    ManualSignalNotifier,
)
from .server import ManagedServer, TrackingHTTPServer, HTTPServerAdapter
from .coordinator import GracefulStop, DEFAULT_TIMEOUT, SERVER_SHUTDOWN_TIMEOUT
from .logging_config import setup_logging

__all__ = [
    # Signals
    "TERMINATION_SIGNALS",
    "StopSignal",
    "SignalSink",
    "SignalNotifier",
    "OsSignalNotifier",
    "ManualSignalNotifier",
    # Managed Server
    "ManagedServer",
    "TrackingHTTPServer",
    "HTTPServerAdapter",
    # Coordinator
    "GracefulStop",
    "DEFAULT_TIMEOUT",
    "SERVER_SHUTDOWN_TIMEOUT",
    # Logging
    "setup_logging",
]
