"""Tests for the tracking HTTP server and its ManagedServer adapter."""

import time
from http.server import BaseHTTPRequestHandler
from threading import Event, Thread

import pytest
import requests

from gracefulstop.coordinator import GracefulStop
from gracefulstop.server import HTTPServerAdapter, ManagedServer, TrackingHTTPServer
from gracefulstop.signals import ManualSignalNotifier


def make_handler(release: Event) -> type:
    """Handler answering '/' at once and '/slow' once release is set."""

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path == "/slow":
                release.wait(timeout=5.0)
            body = b"done"
            self.send_response(200)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            pass

    return Handler


def wait_until(predicate, timeout: float = 2.0) -> bool:
    """Poll predicate until it holds or timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class SlowRequest:
    """Issues GET /slow on a background thread and keeps the outcome."""

    def __init__(self, url: str) -> None:
        self.status_code = None
        self.error = None
        self._thread = Thread(target=self._get, args=(f"{url}/slow",))

    def _get(self, url: str) -> None:
        try:
            self.status_code = requests.get(url, timeout=5.0).status_code
        except requests.exceptions.RequestException as e:
            self.error = e

    def start(self) -> "SlowRequest":
        self._thread.start()
        return self

    def join(self, timeout: float = 5.0) -> None:
        self._thread.join(timeout)


class TestHTTPServerAdapter:
    """Tests for HTTPServerAdapter."""

    @pytest.fixture
    def release(self):
        release = Event()
        yield release
        release.set()

    @pytest.fixture
    def server(self, release: Event) -> TrackingHTTPServer:
        return TrackingHTTPServer(("127.0.0.1", 0), make_handler(release))

    @pytest.fixture
    def adapter(self, server: TrackingHTTPServer):
        adapter = HTTPServerAdapter(server, poll_interval=0.05)
        adapter.start()
        yield adapter
        adapter.close()

    def test_implements_protocol(self, adapter: HTTPServerAdapter):
        assert isinstance(adapter, ManagedServer)

    def test_url_uses_bound_port(self, adapter: HTTPServerAdapter):
        host, port = adapter.server_address
        assert host == "127.0.0.1"
        assert port > 0
        assert adapter.url == f"http://127.0.0.1:{port}"

    def test_serves_requests(self, adapter: HTTPServerAdapter):
        response = requests.get(adapter.url, timeout=2.0)
        assert response.status_code == 200
        assert response.text == "done"

    def test_start_twice_rejected(self, adapter: HTTPServerAdapter):
        with pytest.raises(RuntimeError, match="already started"):
            adapter.start()

    def test_shutdown_refuses_new_connections(self, adapter: HTTPServerAdapter):
        """Test the listener is closed once shutdown returns."""
        adapter.shutdown(2.0)

        assert not adapter.is_serving
        with pytest.raises(requests.exceptions.ConnectionError):
            requests.get(adapter.url, timeout=1.0)

    def test_shutdown_waits_for_in_flight_request(
        self, adapter: HTTPServerAdapter, server: TrackingHTTPServer, release: Event
    ):
        """Test an in-flight request is allowed to finish during shutdown."""
        slow = SlowRequest(adapter.url).start()
        assert wait_until(lambda: server.active_connections == 1)

        releaser = Thread(target=lambda: (time.sleep(0.2), release.set()))
        releaser.start()

        adapter.shutdown(2.0)
        slow.join()
        releaser.join()

        assert slow.status_code == 200
        assert slow.error is None
        assert server.active_connections == 0

    def test_shutdown_timeout_then_force_close(
        self, adapter: HTTPServerAdapter, server: TrackingHTTPServer
    ):
        """Test a stuck request makes shutdown time out and close() hangs it up."""
        slow = SlowRequest(adapter.url).start()
        assert wait_until(lambda: server.active_connections == 1)

        with pytest.raises(TimeoutError, match="still active"):
            adapter.shutdown(0.2)

        adapter.close()
        slow.join()

        assert slow.status_code is None
        assert isinstance(slow.error, requests.exceptions.ConnectionError)

    def test_close_is_repeatable(self, adapter: HTTPServerAdapter):
        adapter.close()
        adapter.close()
        with pytest.raises(requests.exceptions.ConnectionError):
            requests.get(adapter.url, timeout=1.0)

    def test_close_without_start(self, server: TrackingHTTPServer):
        adapter = HTTPServerAdapter(server)
        adapter.close()
        assert not adapter.is_serving

    def test_wait_idle_when_idle(self, server: TrackingHTTPServer):
        assert server.wait_idle(timeout=0.1)
        assert server.active_connections == 0


class TestCoordinatedHTTPShutdown:
    """End-to-end shutdown of a real HTTP server through GracefulStop."""

    @pytest.fixture
    def release(self):
        release = Event()
        yield release
        release.set()

    @pytest.fixture
    def server(self, release: Event) -> TrackingHTTPServer:
        return TrackingHTTPServer(("127.0.0.1", 0), make_handler(release))

    def test_signal_stops_server_then_fires_sinks(self, server: TrackingHTTPServer):
        notifier = ManualSignalNotifier()
        adapter = HTTPServerAdapter(server, poll_interval=0.05)
        adapter.start()
        gs = GracefulStop(timeout=0, notifier=notifier)
        sink = gs.add()
        gs.set_server_and_watch(adapter)

        assert requests.get(adapter.url, timeout=2.0).status_code == 200

        notifier.deliver()

        assert gs.wait(timeout=5.0)
        assert sink.fired
        with pytest.raises(requests.exceptions.ConnectionError):
            requests.get(adapter.url, timeout=1.0)

    def test_stuck_request_is_force_closed(self, server: TrackingHTTPServer):
        """Test the coordinator force-closes a request outliving server_timeout."""
        notifier = ManualSignalNotifier()
        adapter = HTTPServerAdapter(server, poll_interval=0.05)
        adapter.start()
        gs = GracefulStop(timeout=0, notifier=notifier, server_timeout=0.2)
        sink = gs.add()
        gs.set_server_and_watch(adapter)

        slow = SlowRequest(adapter.url).start()
        assert wait_until(lambda: server.active_connections == 1)

        notifier.deliver()

        assert gs.wait(timeout=5.0)
        slow.join()
        assert sink.fired
        assert isinstance(slow.error, requests.exceptions.ConnectionError)
