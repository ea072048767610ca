import socket
import urllib.request

import pytest

from egressnode.debug import DebugService, get_error_code
from egressnode.process import EgressNotFoundError


class FakeClient:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def get_pipeline_dot(self):
        return "digraph {}"

    def get_pprof(self, profile_name, timeout, debug):
        self.calls.append((profile_name, timeout, debug))
        if self.fail:
            raise RuntimeError("handler crashed")
        return b"prof"


class FakePM:
    def __init__(self, clients):
        self.clients = clients

    def get_client(self, egress_id):
        try:
            return self.clients[egress_id]
        except KeyError:
            raise EgressNotFoundError() from None


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def service(client):
    calls = []

    def profiler(name, timeout, debug):
        calls.append((name, timeout, debug))
        return b"svc"

    svc = DebugService(FakePM({"EG_1": client}), profiler)
    svc.profiler_calls = calls
    return svc


def test_dot_file(service):
    status, headers, body = service.handle_request("/gst_pipeline/EG_1", {})
    assert status == 200
    assert body == b"digraph {}"
    assert service.get_gst_pipeline_dot_file("EG_1") == "digraph {}"


def test_dot_file_unknown_egress(service):
    status, _, body = service.handle_request("/gst_pipeline/EG_X", {})
    assert status == 404
    assert body == b"egress not found\n"
    with pytest.raises(EgressNotFoundError):
        service.get_gst_pipeline_dot_file("EG_X")


def test_pprof_handler(service, client):
    status, headers, body = service.handle_request(
        "/pprof/EG_1/heap", {"timeout": ["5"], "debug": ["1"]}
    )
    assert status == 200
    assert headers["Content-Type"] == "application/octet-stream"
    assert body == b"prof"
    assert client.calls == [("heap", 5, 1)]


def test_pprof_unknown_handler(service):
    status, _, body = service.handle_request("/pprof/EG_X/heap", {})
    assert status == 404
    assert body == b"handler not found\n"


def test_pprof_handler_error(client):
    svc = DebugService(FakePM({"EG_1": FakeClient(fail=True)}))
    status, _, body = svc.handle_request("/pprof/EG_1/heap", {})
    assert status == 500
    assert body == b"handler crashed\n"


def test_pprof_service_bad_query_defaults_to_zero(service):
    status, _, body = service.handle_request("/pprof/heap", {"timeout": "soon"})
    assert status == 200
    assert body == b"svc"
    assert service.profiler_calls == [("heap", 0, 0)]


def test_pprof_malformed(service):
    status, _, body = service.handle_request("/pprof/EG_1/heap/extra", {})
    assert status == 404
    assert body == b"malformed url\n"


def test_unknown_route(service):
    status, _, _ = service.handle_request("/other", {})
    assert status == 404


def test_default_profiler():
    svc = DebugService(FakePM({}))
    status, _, body = svc.handle_request("/pprof/threads", {})
    assert status == 200
    assert b"MainThread" in body
    status, _, _ = svc.handle_request("/pprof/unknown", {})
    assert status == 500


def test_get_error_code():
    assert get_error_code(None) == 200
    assert get_error_code(EgressNotFoundError()) == 404
    assert get_error_code(RuntimeError("x")) == 500


def test_debug_handlers_disabled(service):
    assert service.start_debug_handlers(0) is None


def test_debug_handlers_serve(service):
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    server = service.start_debug_handlers(port)
    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/gst_pipeline/EG_1", timeout=5) as resp:
            assert resp.status == 200
            assert resp.read() == b"digraph {}"
    finally:
        server.shutdown()
        server.server_close()