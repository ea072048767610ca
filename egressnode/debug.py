"""HTTP endpoints for pipeline graphs and profiles of the service and its handlers."""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from collections.abc import Callable, Mapping, Sequence
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from egressnode.process import EgressNotFoundError

log = logging.getLogger(__name__)

GST_PIPELINE_DOT_FILE_APP = "gst_pipeline"
PPROF_APP = "pprof"

_TEXT = "text/plain; charset=utf-8"
_OCTET = "application/octet-stream"

Response = tuple[int, dict[str, str], bytes]
Profiler = Callable[[str, int, int], bytes]


def get_error_code(err: BaseException | None) -> int:
    """Map an error to an HTTP status code."""
    status = getattr(err, "http_status", None)
    if err is not None and isinstance(status, int):
        return status
    if err is None:
        return int(HTTPStatus.OK)
    return int(HTTPStatus.INTERNAL_SERVER_ERROR)


def _default_profiler(profile_name: str, timeout: int, debug: int) -> bytes:
    if profile_name != "threads":
        raise ValueError(f"profile {profile_name!r} not found")
    names = {t.ident: t.name for t in threading.enumerate()}
    parts = []
    for ident, frame in sys._current_frames().items():
        parts.append(f"Thread {names.get(ident, ident)}:\n")
        parts.extend(traceback.format_stack(frame))
        parts.append("\n")
    return "".join(parts).encode()


def _error(message: str, status: int) -> Response:
    return status, {"Content-Type": _TEXT}, (message + "\n").encode()


def _query_int(query: Mapping[str, Any], key: str) -> int:
    value = query.get(key, "")
    if isinstance(value, Sequence) and not isinstance(value, str):
        value = value[0] if value else ""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class DebugService:
    """Serves pipeline dot files and profiles for the service and its handlers."""

    def __init__(self, pm: Any, profiler: Profiler | None = None) -> None:
        self.pm = pm
        self.profiler = profiler or _default_profiler

    def get_gst_pipeline_dot_file(self, egress_id: str) -> str:
        """Return the handler's pipeline graph; raises EgressNotFoundError if unknown."""
        return self.pm.get_client(egress_id).get_pipeline_dot()

    def handle_request(self, path: str, query: Mapping[str, Any]) -> Response:
        """Answer a GET request; returns status, headers and body."""
        if path.startswith(f"/{GST_PIPELINE_DOT_FILE_APP}/"):
            return self._handle_dot_file(path)
        if path.startswith(f"/{PPROF_APP}/"):
            return self._handle_pprof(path, query)
        return _error("404 page not found", int(HTTPStatus.NOT_FOUND))

    # path format: /<application>/<egress_id>/<optional_other_params>
    def _handle_dot_file(self, path: str) -> Response:
        elements = path.split("/")
        if len(elements) < 3:
            return _error("malformed url", int(HTTPStatus.NOT_FOUND))
        try:
            dot = self.get_gst_pipeline_dot_file(elements[2])
        except Exception as exc:
            return _error(str(exc), get_error_code(exc))
        return int(HTTPStatus.OK), {"Content-Type": _TEXT}, dot.encode()

    # path format: /<application>/<egress_id>/<profile_name> or /<application>/<profile_name>
    def _handle_pprof(self, path: str, query: Mapping[str, Any]) -> Response:
        timeout = _query_int(query, "timeout")
        debug = _query_int(query, "debug")
        elements = path.split("/")

        match len(elements):
            case 3:
                try:
                    body = self.profiler(elements[2], timeout, debug)
                except Exception as exc:
                    return _error(str(exc), get_error_code(exc))
            case 4:
                try:
                    client = self.pm.get_client(elements[2])
                except EgressNotFoundError:
                    return _error("handler not found", int(HTTPStatus.NOT_FOUND))
                try:
                    body = client.get_pprof(elements[3], timeout, debug)
                except Exception as exc:
                    return _error(str(exc), get_error_code(exc))
            case _:
                return _error("malformed url", int(HTTPStatus.NOT_FOUND))

        return int(HTTPStatus.OK), {"Content-Type": _OCTET}, bytes(body)

    def start_debug_handlers(self, port: int) -> ThreadingHTTPServer | None:
        """Serve the debug endpoints on ``port`` in the background; 0 disables them."""
        if port == 0:
            log.debug("debug handler disabled")
            return None

        service = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parts = urlsplit(self.path)
                status, headers, body = service.handle_request(parts.path, parse_qs(parts.query))
                self.send_response(status)
                for key, value in headers.items():
                    self.send_header(key, value)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                log.debug(format, *args)

        server = ThreadingHTTPServer(("", port), _Handler)
        log.debug("starting debug handler on address :%d", port)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        return server