"""The egress node service: admits requests, launches handlers and reports their state."""

from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, is_dataclass
from functools import partial
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol

import yaml

from egressnode.debug import DebugService
from egressnode.metrics import MetricsService, render_metric_families
from egressnode.monitor import EgressAlreadyExistsError
from egressnode.process import DEFAULT_TMP_DIR, EgressInfo, EgressStatus, ProcessManager

log = logging.getLogger(__name__)

VERSION = "1.9.0"
HANDLER_ID_PREFIX = "EGH_"
_INTERNAL_ERROR = int(HTTPStatus.INTERNAL_SERVER_ERROR)


class ShuttingDownError(Exception):
    """The node is shutting down and takes no new requests."""

    http_status = int(HTTPStatus.SERVICE_UNAVAILABLE)

    def __init__(self, message: str = "egress is shutting down") -> None:
        super().__init__(message)


class HandlerExitError(Exception):
    """A handler process exited with a non-zero status."""

    def __init__(self, returncode: int) -> None:
        self.returncode = returncode
        super().__init__(f"handler exited with status {returncode}")


class IOClient(Protocol):
    def create_egress(self, info: EgressInfo) -> None: ...

    def update_egress(self, info: EgressInfo) -> None: ...

    def is_healthy(self) -> bool: ...

    def drain(self) -> None: ...


@dataclass
class ServiceConfig:
    """Settings of the node service."""

    node_id: str = ""
    cluster_id: str = ""
    tmp_dir: str = DEFAULT_TMP_DIR
    debug_handler_port: int = 0
    prometheus_port: int = 0
    template_port: int = 0
    handler_command: tuple[str, ...] = ("egress",)
    base: dict[str, Any] = field(default_factory=dict)


def _new_guid(prefix: str) -> str:
    return prefix + secrets.token_hex(6)


def _to_plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if hasattr(value, "__dict__"):
        return dict(vars(value))
    return value


class Server:
    """Accepts egress requests and manages the handler processes that run them."""

    def __init__(
        self,
        conf: ServiceConfig,
        io_client: IOClient,
        monitor: Any,
        process_manager: ProcessManager,
        validator: Callable[[ServiceConfig, Any], EgressInfo],
    ) -> None:
        self.conf = conf
        self.io_client = io_client
        self.monitor = monitor
        self.process_manager = process_manager
        self.validator = validator
        self.metrics_service = MetricsService(self._gatherers)
        self.debug_service = DebugService(process_manager)
        self.drain_interval = 1.0

        self._lock = threading.Lock()
        self._active_requests = 0
        self._terminating = threading.Event()
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._http_servers: list[ThreadingHTTPServer] = []

        if conf.debug_handler_port > 0:
            debug_server = self.debug_service.start_debug_handlers(conf.debug_handler_port)
            if debug_server is not None:
                self._http_servers.append(debug_server)

        if conf.prometheus_port > 0:
            self._start_prometheus(conf.prometheus_port)

        os.makedirs(os.path.join(conf.tmp_dir, conf.node_id), mode=0o755, exist_ok=True)

    def _gatherers(self) -> list[Any]:
        sources: list[Any] = []
        collect = getattr(self.monitor, "collect", None)
        if callable(collect):
            sources.append(collect)
        sources.extend(self.process_manager.get_gatherers())
        return sources

    def _serve(self, server: ThreadingHTTPServer) -> ThreadingHTTPServer:
        threading.Thread(target=server.serve_forever, daemon=True).start()
        self._http_servers.append(server)
        return server

    def _start_prometheus(self, port: int) -> ThreadingHTTPServer:
        metrics_service = self.metrics_service

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                body = render_metric_families(metrics_service.gather()).encode()
                self.send_response(int(HTTPStatus.OK))
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                log.debug(format, *args)

        return self._serve(ThreadingHTTPServer(("", port), _Handler))

    def start_templates_server(self, directory: str) -> ThreadingHTTPServer | None:
        """Serve layout templates from ``directory`` on localhost; port 0 disables it."""
        if self.conf.template_port == 0:
            log.debug("templates server disabled")
            return None
        handler = partial(SimpleHTTPRequestHandler, directory=str(directory))
        log.debug("starting template server on address localhost:%d", self.conf.template_port)
        return self._serve(ThreadingHTTPServer(("localhost", self.conf.template_port), handler))

    def run(self) -> None:
        """Serve until shut down, then drain."""
        log.debug("starting service (version=%s)", VERSION)
        log.info("service ready")
        self._shutdown.wait()
        log.info("draining")
        self.drain()
        log.info("service stopped")

    def status(self) -> bytes:
        """Return the available CPU and every active request as JSON."""
        status: dict[str, Any] = {"CpuLoad": self.monitor.get_available_cpu()}
        self.process_manager.get_status(status)
        return json.dumps(status, default=str).encode()

    def _change_active(self, delta: int) -> None:
        with self._lock:
            self._active_requests += delta

    def _active(self) -> int:
        with self._lock:
            return self._active_requests

    def is_idle(self) -> bool:
        return self._active() == 0

    def is_disabled(self) -> bool:
        return self._shutdown.is_set() or not self.io_client.is_healthy()

    def is_terminating(self) -> bool:
        return self._terminating.is_set()

    def shutdown(self, terminating: bool, kill: bool) -> None:
        """Stop taking requests; optionally mark terminating and kill all handlers."""
        if terminating:
            self._terminating.set()
        with self._shutdown_lock:
            if not self._shutdown.is_set():
                log.info("no longer accepting requests (cluster=%s)", self.conf.cluster_id)
                self._shutdown.set()
        if kill:
            self.process_manager.kill_all()

    def drain(self) -> None:
        """Wait for all requests to finish, then drain the io client."""
        while not self.is_idle():
            time.sleep(self.drain_interval)
        for server in self._http_servers:
            server.shutdown()
        self._http_servers.clear()
        log.info("draining io client")
        self.io_client.drain()

    def start_egress(self, req: Any) -> EgressInfo:
        """Admit, validate and launch a request; return its info."""
        self._change_active(1)

        if self.is_disabled():
            self._change_active(-1)
            raise ShuttingDownError()
        if self.process_manager.already_exists(req.egress_id):
            self._change_active(-1)
            raise EgressAlreadyExistsError()
        try:
            self.monitor.accept_request(req)
        except Exception:
            self._change_active(-1)
            raise

        log.info("request received (egressID=%s)", req.egress_id)

        try:
            info = self.validator(self.conf, req)
        except Exception:
            self.monitor.egress_aborted(req)
            self._change_active(-1)
            raise

        log.info(
            "request validated (egressID=%s, requestType=%s, room=%s)",
            req.egress_id, getattr(req, "request_type", ""), info.room_name,
        )

        with ThreadPoolExecutor(max_workers=1) as executor:
            created = executor.submit(self.io_client.create_egress, info)
            launch_err: Exception | None = None
            try:
                self._launch_process(req, info)
            except Exception as exc:
                launch_err = exc
            create_err = created.exception()

        if launch_err is not None and create_err is not None:
            self._process_ended(req, info, None)
            raise launch_err
        if launch_err is not None:
            self._process_ended(req, info, launch_err)
            raise launch_err
        if create_err is not None:
            # launched but failed to save: abort
            info.error = str(create_err)
            info.error_code = _INTERNAL_ERROR
            self.process_manager.abort_process(req.egress_id, create_err)
            raise create_err
        return info

    def _launch_process(self, req: Any, info: EgressInfo) -> None:
        self.monitor.egress_started(req)

        handler_id = _new_guid(HANDLER_ID_PREFIX)
        pipeline_conf = {
            **self.conf.base,
            "node_id": self.conf.node_id,
            "cluster_id": self.conf.cluster_id,
            "handler_id": handler_id,
            "tmp_dir": os.path.join(self.conf.tmp_dir, req.egress_id),
        }
        conf_string = yaml.safe_dump(pipeline_conf, sort_keys=True)
        req_string = json.dumps(_to_plain(req), default=str)
        command = [
            *self.conf.handler_command,
            "run-handler",
            "--config", conf_string,
            "--request", req_string,
        ]

        popen = self.process_manager.launch(handler_id, req, info, command)
        self.monitor.update_pid(info.egress_id, popen.pid)
        threading.Thread(
            target=self._wait_for_handler, args=(popen, req, info), daemon=True
        ).start()

    def _wait_for_handler(self, popen: subprocess.Popen, req: Any, info: EgressInfo) -> None:
        returncode = popen.wait()
        self._process_ended(req, info, HandlerExitError(returncode) if returncode != 0 else None)

    def _process_ended(self, req: Any, info: EgressInfo, err: Exception | None) -> None:
        if err is not None:
            now = time.time_ns()
            info.updated_at = now
            info.ended_at = now
            info.status = EgressStatus.FAILED
            if not info.error:
                info.error = str(err)
                info.error_code = _INTERNAL_ERROR
            try:
                self.io_client.update_egress(info)
            except Exception as exc:
                log.error("failed to update egress: %s (egressID=%s)", exc, info.egress_id)
            log.error("process failed: %s (egressID=%s)", err, info.egress_id)

        avg_cpu, max_cpu, max_memory = self.monitor.egress_ended(req)
        if max_cpu > 0:
            log.debug(
                "egress metrics (egressID=%s, avgCPU=%s, maxCPU=%s, maxMemory=%s)",
                info.egress_id, avg_cpu, max_cpu, max_memory,
            )

        shutil.rmtree(os.path.join(self.conf.tmp_dir, req.egress_id), ignore_errors=True)
        self.process_manager.process_finished(info.egress_id)
        self._change_active(-1)

    def start_egress_affinity(self, req: Any) -> float:
        """Return how well suited this node is for the request; -1 if it cannot take it."""
        if self.is_disabled() or not self.monitor.can_accept_request(req):
            return -1.0
        if self._active() == 0:
            # an idle node yields to nodes already running requests
            return 0.5
        return 1.0

    def list_active_egress(self) -> list[str]:
        return self.process_manager.get_active_egress_ids()

    def handler_ready(self, egress_id: str) -> None:
        """Called by a handler once it is up; raises EgressNotFoundError if unknown."""
        self.process_manager.handler_started(egress_id)

    def handler_update(self, info: EgressInfo) -> None:
        """Forward a handler's update; an internal error shuts the node down."""
        try:
            self.io_client.update_egress(info)
        except Exception as exc:
            log.error("failed to update egress: %s (egressID=%s)", exc, info.egress_id)

        if info.error_code == _INTERNAL_ERROR:
            log.error("internal error, shutting down: %s", info.error)
            self.shutdown(False, False)

    def handler_finished(self, egress_id: str, info: EgressInfo, metrics: str) -> None:
        """Forward a handler's final info and keep its last metrics."""
        try:
            self.io_client.update_egress(info)
        except Exception as exc:
            log.error("failed to update egress: %s (egressID=%s)", exc, egress_id)
        self.metrics_service.store_process_ended_metrics(egress_id, metrics)