import threading
import urllib.error
import urllib.parse
import urllib.request

import pytest

from firecore.block import StartOption
from firecore.http_server import OperatorHTTPServer
from firecore.logplugin import Shutter
from firecore.operator import Operator


class FakeSuperviser(Shutter):
    def __init__(self):
        super().__init__()
        self.name = "fake"
        self.running = False
        self.starts = []
        self.stops = 0

    def is_running(self):
        return self.running

    def command(self):
        return "node --flag"

    def server_id(self):
        return "server-1"

    def start(self, *options):
        self.starts.append(options)

    def stop(self):
        self.stops += 1

    def wait_stopped(self, timeout=None):
        return self.is_terminating()

    def last_exit_code(self):
        return 0

    def last_log_lines(self):
        return []

    def last_seen_block_num(self):
        return 0


class Readiness:
    def __init__(self, ready):
        self.ready = ready

    def is_ready(self):
        return self.ready


@pytest.fixture
def superviser():
    return FakeSuperviser()


@pytest.fixture
def launched(superviser):
    operator = Operator(superviser, Readiness(True))
    thread = threading.Thread(target=operator.launch, daemon=True)
    thread.start()
    yield operator
    operator.shutdown(None)
    thread.join(5)


def test_ping(superviser):
    server = OperatorHTTPServer(Operator(superviser), "127.0.0.1:0")
    assert server.handle("GET", "/v1/ping", {}) == (200, "pong\n")


def test_unknown_path_and_wrong_method(superviser):
    server = OperatorHTTPServer(Operator(superviser), "127.0.0.1:0")
    assert server.handle("GET", "/nope", {})[0] == 404
    assert server.handle("POST", "/v1/ping", {})[0] == 405


def test_start_command_and_is_running(superviser):
    server = OperatorHTTPServer(Operator(superviser), "127.0.0.1:0")
    assert server.handle("GET", "/v1/start_command") == (200, "Command:\nnode --flag\n")
    superviser.running = True
    assert server.handle("GET", "/v1/is_running") == (200, '{"is_running":true}')


def test_server_id(superviser):
    server = OperatorHTTPServer(Operator(superviser), "127.0.0.1:0")
    assert server.handle("GET", "/v1/server_id") == (200, "server-1")


def test_healthz_states(superviser):
    readiness = Readiness(False)
    server = OperatorHTTPServer(Operator(superviser, readiness), "127.0.0.1:0")

    assert server.handle("GET", "/healthz") == (503, "not ready: chain is not running\n")
    superviser.running = True
    assert server.handle("GET", "/v1/healthz") == (503, "not ready: chain is not ready\n")
    readiness.ready = True
    assert server.handle("GET", "/healthz") == (200, "ready\n")


def test_async_command_submitted(superviser):
    server = OperatorHTTPServer(Operator(superviser), "127.0.0.1:0")
    assert server.handle("POST", "/v1/maintenance", {}) == (201, "maintenance command submitted\n")


def test_extra_route(superviser):
    server = OperatorHTTPServer(
        Operator(superviser),
        "127.0.0.1:0",
        extra_routes={("GET", "/v1/custom"): lambda params: (200, params.get("value", ""))},
    )
    assert server.handle("GET", "/v1/custom", {"value": "abc"}) == (200, "abc")


def test_sync_command_success(launched, superviser):
    server = OperatorHTTPServer(launched, "127.0.0.1:0")
    status, body = server.handle("POST", "/v1/maintenance", {"sync": "true"})
    assert (status, body) == (200, "Success: maintenance completed\n")
    assert superviser.stops == 1


def test_sync_command_failure(launched):
    server = OperatorHTTPServer(launched, "127.0.0.1:0")
    status, body = server.handle("POST", "/v1/backup", {"sync": "true"})
    assert status == 500
    assert body.startswith("ERROR: backup failed:")


def test_real_http_requests(launched, superviser):
    server = OperatorHTTPServer(launched, "127.0.0.1:0")
    server.start()
    try:
        host, port = server.address
        base = f"http://{host}:{port}"
        with urllib.request.urlopen(base + "/v1/ping", timeout=5) as response:
            assert response.read() == b"pong\n"

        data = urllib.parse.urlencode({"sync": "true", "debug-firehose-logs": "true"}).encode()
        with urllib.request.urlopen(base + "/v1/resume", data=data, timeout=10) as response:
            assert response.status == 200
            assert response.read() == b"Success: resume completed\n"
        assert superviser.starts[-1] == (StartOption.ENABLE_DEBUG_DEEPMIND,)

        with pytest.raises(urllib.error.HTTPError) as info:
            urllib.request.urlopen(base + "/healthz", timeout=5)
        assert info.value.code == 503
    finally:
        server.shutdown()
    assert server.address is None