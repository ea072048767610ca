"""Launching, tracking and stopping egress handler processes."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, is_dataclass
from enum import IntEnum
from http import HTTPStatus
from typing import Any, Protocol

from egressnode.metrics import MetricFamily, deserialize_metrics

log = logging.getLogger(__name__)

LAUNCH_TIMEOUT = 10.0
DEFAULT_TMP_DIR = os.path.join(tempfile.gettempdir(), "egress")


class EgressNotFoundError(Exception):
    """No handler is registered for the egress id."""

    http_status = int(HTTPStatus.NOT_FOUND)

    def __init__(self, message: str = "egress not found") -> None:
        super().__init__(message)


class EgressStatus(IntEnum):
    STARTING = 0
    ACTIVE = 1
    ENDING = 2
    COMPLETE = 3
    FAILED = 4
    ABORTED = 5
    LIMIT_REACHED = 6


@dataclass
class EgressInfo:
    """State of an egress as reported to the rest of the system."""

    egress_id: str
    room_name: str = ""
    status: EgressStatus = EgressStatus.STARTING
    error: str = ""
    error_code: int = 0
    started_at: int = 0
    updated_at: int = 0
    ended_at: int = 0


class HandlerClient(Protocol):
    def get_metrics(self) -> str: ...

    def get_pipeline_dot(self) -> str: ...

    def get_pprof(self, profile_name: str, timeout: int, debug: int) -> bytes: ...


class Process:
    """A launched handler and the client used to talk to it."""

    def __init__(
        self,
        handler_id: str,
        req: Any,
        info: EgressInfo,
        client: HandlerClient,
        popen: Any = None,
    ) -> None:
        self.handler_id = handler_id
        self.req = req
        self.info = info
        self.client = client
        self.popen = popen
        self.ready = threading.Event()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Mark the process closed without signalling it."""
        with self._close_lock:
            self._closed.set()

    def gather(self) -> list[MetricFamily]:
        """Fetch the handler's metrics; an unreachable handler yields none."""
        try:
            text = self.client.get_metrics()
        except Exception as exc:
            if not self.closed:
                log.warning(
                    "failed to obtain metrics from handler: %s (egressID=%s)",
                    exc, self.req.egress_id,
                )
            return []
        return deserialize_metrics(self.info.egress_id, text)

    def kill(self) -> None:
        """Send SIGINT to the handler, once."""
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
        if self.popen is None:
            log.error("failed to kill process: not started (egressID=%s)", self.req.egress_id)
            return
        try:
            self.popen.send_signal(signal.SIGINT)
        except OSError as exc:
            log.error("failed to kill process: %s (egressID=%s)", exc, self.req.egress_id)


def _status_value(req: Any) -> Any:
    request = getattr(req, "request", None)
    if request is not None:
        return request
    if is_dataclass(req) and not isinstance(req, type):
        return asdict(req)
    return req


class ProcessManager:
    """Registry of running handler processes, keyed by egress id."""

    def __init__(
        self,
        client_factory: Callable[[str], HandlerClient],
        tmp_dir: str = DEFAULT_TMP_DIR,
        launch_timeout: float = LAUNCH_TIMEOUT,
    ) -> None:
        self._client_factory = client_factory
        self.tmp_dir = str(tmp_dir)
        self.launch_timeout = launch_timeout
        self._lock = threading.Lock()
        self._active: dict[str, Process] = {}

    def launch(
        self, handler_id: str, req: Any, info: EgressInfo, command: Sequence[str]
    ) -> subprocess.Popen:
        """Start a handler and wait for it to report ready.

        Raises EgressNotFoundError if the handler does not report in time.
        """
        ipc_dir = os.path.join(self.tmp_dir, handler_id)
        os.makedirs(ipc_dir, mode=0o755, exist_ok=True)
        client = self._client_factory(ipc_dir)

        process = Process(handler_id, req, info, client)
        with self._lock:
            self._active[info.egress_id] = process

        try:
            popen = subprocess.Popen(list(command), cwd="/", start_new_session=True)
        except OSError as exc:
            log.error("could not launch process: %s", exc)
            raise
        with self._lock:
            process.popen = popen

        if process.ready.wait(self.launch_timeout):
            return popen

        log.warning("no response from handler (egressID=%s)", info.egress_id)
        popen.kill()
        popen.wait()
        raise EgressNotFoundError()

    def already_exists(self, egress_id: str) -> bool:
        with self._lock:
            return egress_id in self._active

    def handler_started(self, egress_id: str) -> None:
        """Mark a handler ready; raises EgressNotFoundError if unknown."""
        with self._lock:
            process = self._active.get(egress_id)
            if process is None:
                raise EgressNotFoundError()
            process.ready.set()

    def get_active_egress_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def get_status(self, info: dict[str, Any]) -> None:
        """Add each active egress id and its request to ``info``."""
        with self._lock:
            for process in self._active.values():
                info[process.req.egress_id] = _status_value(process.req)

    def get_gatherers(self) -> list[Process]:
        with self._lock:
            return list(self._active.values())

    def get_client(self, egress_id: str) -> HandlerClient:
        with self._lock:
            process = self._active.get(egress_id)
            if process is None:
                raise EgressNotFoundError()
            return process.client

    def kill_all(self) -> None:
        with self._lock:
            for process in self._active.values():
                process.kill()

    def abort_process(self, egress_id: str, err: Exception) -> None:
        """Stop a handler and forget it."""
        with self._lock:
            process = self._active.pop(egress_id, None)
            if process is None:
                return
            log.warning("aborting egress: %s (egressID=%s)", err, egress_id)
            process.kill()
            process.close()

    def kill_process(self, egress_id: str, err: Exception) -> None:
        """Mark an egress failed with ``err`` and stop its handler."""
        with self._lock:
            process = self._active.get(egress_id)
            if process is None:
                return
            log.error("killing egress: %s (egressID=%s)", err, egress_id)
            now = time.time_ns()
            process.info.status = EgressStatus.FAILED
            process.info.error = str(err)
            process.info.error_code = int(HTTPStatus.FORBIDDEN)
            process.info.updated_at = now
            process.info.ended_at = now
            process.kill()

    def process_finished(self, egress_id: str) -> None:
        with self._lock:
            process = self._active.pop(egress_id, None)
            if process is not None:
                process.close()