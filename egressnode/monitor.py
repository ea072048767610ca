"""CPU, memory and audio-client admission control for egress requests."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from egressnode.metrics import Metric, MetricFamily
from egressnode.types import RequestType

log = logging.getLogger(__name__)

CPU_HOLD_DURATION = 15.0
DEFAULT_KILL_THRESHOLD = 0.95
MIN_KILL_DURATION = 10
GB = 1024.0 * 1024.0 * 1024.0
PULSE_CLIENT_HOLD = 4

_WEB_TYPES = frozenset({RequestType.ROOM_COMPOSITE, RequestType.WEB})


class EgressAlreadyExistsError(Exception):
    """An egress with this id is already pending or running."""

    def __init__(self, message: str = "egress already exists") -> None:
        super().__init__(message)


class NotEnoughCPUError(Exception):
    """The node cannot take on another request."""

    def __init__(self, message: str = "not enough CPU") -> None:
        super().__init__(message)


class CPUExhaustedError(Exception):
    """A handler was killed because the node ran out of CPU."""

    def __init__(self, usage: float) -> None:
        self.usage = usage
        super().__init__(f"CPU exhausted: {usage:.2f} cores used")


class OOMError(Exception):
    """A handler was killed because the node ran out of memory."""

    def __init__(self, usage_gb: float) -> None:
        self.usage_gb = usage_gb
        super().__init__(f"out of memory: {usage_gb:.2f} GB used")


class Service(Protocol):
    def is_idle(self) -> bool: ...

    def is_disabled(self) -> bool: ...

    def is_terminating(self) -> bool: ...

    def kill_process(self, egress_id: str, err: Exception) -> None: ...


@dataclass
class CPUCostConfig:
    """Estimated cost of each request type and the node's limits."""

    room_composite_cpu_cost: float = 4.0
    audio_room_composite_cpu_cost: float = 1.0
    web_cpu_cost: float = 4.0
    audio_web_cpu_cost: float = 1.0
    participant_cpu_cost: float = 2.0
    track_composite_cpu_cost: float = 1.0
    track_cpu_cost: float = 0.5
    max_cpu_utilization: float = 0.8
    max_memory: float = 0.0
    memory_cost: float = 0.0
    max_pulse_clients: int = 30


@dataclass
class EgressRequest:
    """The parts of a start request that admission control looks at."""

    egress_id: str
    request_type: RequestType
    audio_only: bool = False
    estimated_cpu: float = 0.0


@dataclass
class ProcStats:
    """One sample of node-wide idle CPU and per-process CPU and memory."""

    cpu_idle: float
    cpu: dict[int, float] = field(default_factory=dict)
    memory: dict[int, int] = field(default_factory=dict)


@dataclass
class _ProcessStats:
    egress_id: str
    pending_cpu: float = 0.0
    last_cpu: float = 0.0
    allowed_cpu: float = 0.0
    total_cpu: float = 0.0
    cpu_counter: int = 0
    max_cpu: float = 0.0
    max_memory: int = 0

    @property
    def charged(self) -> float:
        return max(self.pending_cpu, self.last_cpu)


def _free_memory_bytes() -> int:
    try:
        return os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
    except (ValueError, OSError, AttributeError):
        return 0


class Monitor:
    """Decides whether the node can take a request and watches running handlers."""

    cpu_hold_duration: float = CPU_HOLD_DURATION

    def __init__(
        self,
        node_id: str,
        cluster_id: str,
        cost_config: CPUCostConfig,
        service: Service,
        num_cpu: float,
        pulse_clients: Callable[[], int] | None = None,
    ) -> None:
        self.node_id = node_id
        self.cluster_id = cluster_id
        self.cost = cost_config
        self.service = service
        self.num_cpu = float(num_cpu)
        self._pulse_clients = pulse_clients

        self._lock = threading.Lock()
        self._requests = 0
        self._web_requests = 0
        self._pending_pulse_clients = 0
        self._pending_memory_usage = 0.0
        self._high_cpu_duration = 0
        self._pending: dict[str, _ProcessStats] = {}
        self._proc_stats: dict[int, _ProcessStats] = {}
        self._memory_usage = 0.0
        self._cpu_load = 0.0
        self._request_gauge: dict[str, float] = {}

        self._validate_cpu_config()

    def _validate_cpu_config(self) -> None:
        c = self.cost
        requirements = sorted(
            [
                c.room_composite_cpu_cost,
                c.audio_room_composite_cpu_cost,
                c.web_cpu_cost,
                c.audio_web_cpu_cost,
                c.participant_cpu_cost,
                c.track_composite_cpu_cost,
                c.track_cpu_cost,
            ]
        )
        minimum, maximum = requirements[0], requirements[-1]
        recommended = max(maximum, 3.0)
        if self.num_cpu < minimum:
            log.error(
                "not enough cpu: minimum %s, recommended %s, available %s",
                minimum, recommended, self.num_cpu,
            )
            raise ValueError("not enough cpu")
        if self.num_cpu < maximum:
            log.error(
                "not enough cpu for some egress types: minimum %s, recommended %s, available %s",
                maximum, recommended, self.num_cpu,
            )
        log.info("cpu available: %f max cost: %f", self.num_cpu, maximum)

    def _default_cost(self, req: EgressRequest) -> float:
        c = self.cost
        match req.request_type:
            case RequestType.ROOM_COMPOSITE:
                return c.audio_room_composite_cpu_cost if req.audio_only else c.room_composite_cpu_cost
            case RequestType.WEB:
                return c.audio_web_cpu_cost if req.audio_only else c.web_cpu_cost
            case RequestType.PARTICIPANT:
                return c.participant_cpu_cost
            case RequestType.TRACK_COMPOSITE:
                return c.track_composite_cpu_cost
            case RequestType.TRACK:
                return c.track_cpu_cost
        return 0.0

    def can_accept_request(self, req: EgressRequest) -> bool:
        """Return True if the node has room for the request."""
        with self._lock:
            fields, accept = self._can_accept_locked(req)
        log.debug("cpu check %s", fields)
        return accept

    def can_accept_web_request(self) -> bool:
        """Return True if another browser-based request fits the audio client limit."""
        with self._lock:
            return self._can_accept_web_locked()

    def _can_accept_locked(self, req: EgressRequest) -> tuple[dict[str, object], bool]:
        total, available, pending, used = self._cpu_usage_locked()
        fields: dict[str, object] = {
            "total": total,
            "available": available,
            "pending": pending,
            "used": used,
            "activeRequests": self._requests,
            "activeWeb": self._web_requests,
            "memory": self._memory_usage,
        }

        memory_usage = self._memory_usage + self._pending_memory_usage
        if self.cost.max_memory > 0 and memory_usage + self.cost.memory_cost >= self.cost.max_memory:
            fields.update(canAccept=False, reason="memory")
            return fields, False

        if req.request_type in _WEB_TYPES and not self._can_accept_web_locked():
            fields.update(canAccept=False, reason="pulse clients")
            return fields, False

        required = req.estimated_cpu or self._default_cost(req)
        accept = available >= required
        fields.update(required=required, canAccept=accept)
        if not accept:
            fields["reason"] = "cpu"
        return fields, accept

    def _can_accept_web_locked(self) -> bool:
        if self._pulse_clients is None:
            return False
        try:
            clients = int(self._pulse_clients())
        except Exception:
            return False
        return clients + self._pending_pulse_clients + PULSE_CLIENT_HOLD <= self.cost.max_pulse_clients

    def accept_request(self, req: EgressRequest) -> None:
        """Reserve resources for a request, or raise if it cannot be taken."""
        with self._lock:
            if req.egress_id in self._pending:
                raise EgressAlreadyExistsError()
            _, ok = self._can_accept_locked(req)
            if not ok:
                log.warning("can not accept request")
                raise NotEnoughCPUError()

            self._requests += 1
            pulse_clients = 0
            if req.request_type in _WEB_TYPES:
                self._web_requests += 1
                pulse_clients = PULSE_CLIENT_HOLD
            cpu_hold = self._default_cost(req)

            stats = _ProcessStats(egress_id=req.egress_id, pending_cpu=cpu_hold, allowed_cpu=cpu_hold)
            memory_cost = self.cost.memory_cost
            self._pending_memory_usage += memory_cost
            self._pending_pulse_clients += pulse_clients
            self._pending[req.egress_id] = stats

        def release() -> None:
            with self._lock:
                stats.pending_cpu = 0.0
                self._pending_memory_usage -= memory_cost
                self._pending_pulse_clients -= pulse_clients

        timer = threading.Timer(self.cpu_hold_duration, release)
        timer.daemon = True
        timer.start()

    def update_pid(self, egress_id: str, pid: int) -> None:
        """Move a pending request's reservation onto its handler process."""
        with self._lock:
            stats = self._pending.pop(egress_id, None)
            if stats is None:
                log.warning("missing pending procStats (egressID=%s)", egress_id)
                stats = _ProcessStats(egress_id=egress_id, allowed_cpu=self.cost.web_cpu_cost)
            existing = self._proc_stats.get(pid)
            if existing is not None:
                stats.max_cpu = existing.max_cpu
                stats.total_cpu = existing.total_cpu
                stats.cpu_counter = existing.cpu_counter
            self._proc_stats[pid] = stats

    def egress_started(self, req: EgressRequest) -> None:
        """Count a running request by type."""
        with self._lock:
            key = str(req.request_type)
            self._request_gauge[key] = self._request_gauge.get(key, 0.0) + 1

    def egress_aborted(self, req: EgressRequest) -> None:
        """Release a request that was accepted but never launched."""
        with self._lock:
            self._pending.pop(req.egress_id, None)
            self._requests -= 1
            if req.request_type in _WEB_TYPES:
                self._web_requests -= 1

    def egress_ended(self, req: EgressRequest) -> tuple[float, float, int]:
        """Release a finished request; return its average CPU, peak CPU and peak memory."""
        with self._lock:
            key = str(req.request_type)
            self._request_gauge[key] = self._request_gauge.get(key, 0.0) - 1
            if req.request_type in _WEB_TYPES:
                self._web_requests -= 1
            self._pending.pop(req.egress_id, None)
            self._requests -= 1

            for pid, stats in list(self._proc_stats.items()):
                if stats.egress_id == req.egress_id:
                    del self._proc_stats[pid]
                    avg = stats.total_cpu / stats.cpu_counter if stats.cpu_counter else 0.0
                    return avg, stats.max_cpu, stats.max_memory
        return 0.0, 0.0, 0

    def get_available_cpu(self) -> float:
        """Return the CPU still available for new requests."""
        with self._lock:
            return self._cpu_usage_locked()[1]

    def _cpu_usage_locked(self) -> tuple[float, float, float, float]:
        total = self.num_cpu
        if self._requests == 0:
            return total, total, 0.0, 0.0
        pending = sum(s.charged for s in self._pending.values())
        used = sum(s.charged for s in self._proc_stats.values())
        available = total * self.cost.max_cpu_utilization - pending - used
        return total, available, pending, used

    def get_available_memory(self) -> float:
        """Return available memory in GB."""
        with self._lock:
            if self.cost.max_memory == 0:
                return _free_memory_bytes() / GB
            return self.cost.max_memory - self._memory_usage

    def update_egress_stats(self, stats: ProcStats) -> None:
        """Record a usage sample and kill a handler if the node is overloaded."""
        load = 1 - stats.cpu_idle / self.num_cpu
        kills: list[tuple[str, Exception]] = []

        with self._lock:
            self._cpu_load = load

            max_cpu = 0.0
            max_cpu_egress = ""
            for pid, usage in stats.cpu.items():
                proc = self._proc_stats.get(pid)
                if proc is None:
                    continue
                proc.last_cpu = usage
                proc.total_cpu += usage
                proc.cpu_counter += 1
                proc.max_cpu = max(proc.max_cpu, usage)
                if usage > proc.allowed_cpu and usage > max_cpu:
                    max_cpu = usage
                    max_cpu_egress = proc.egress_id

            threshold = DEFAULT_KILL_THRESHOLD
            if threshold <= self.cost.max_cpu_utilization:
                threshold = (1 + self.cost.max_cpu_utilization) / 2

            if load > threshold:
                log.warning("high cpu usage: cpu=%s requests=%s", load, self._requests)
                if self._requests > 1:
                    self._high_cpu_duration += 1
                    if self._high_cpu_duration >= MIN_KILL_DURATION:
                        kills.append((max_cpu_egress, CPUExhaustedError(max_cpu)))
                        self._high_cpu_duration = 0

            total_memory = 0
            max_memory = 0
            max_memory_egress = ""
            for pid, usage in stats.memory.items():
                total_memory += usage
                proc = self._proc_stats.get(pid)
                if proc is None:
                    continue
                proc.max_memory = max(proc.max_memory, usage)
                if usage > max_memory:
                    max_memory = usage
                    max_memory_egress = proc.egress_id

            self._memory_usage = total_memory / GB
            if self.cost.max_memory > 0 and total_memory > int(self.cost.max_memory * GB):
                log.warning(
                    "high memory usage: memory=%s requests=%s", self._memory_usage, self._requests
                )
                kills.append((max_memory_egress, OOMError(max_memory / GB)))

        for egress_id, err in kills:
            self.service.kill_process(egress_id, err)

    def _gauge(self, subsystem: str, name: str, value: float, labels: Mapping[str, str]) -> MetricFamily:
        full = f"livekit_{subsystem}_{name}"
        return MetricFamily(name=full, type="gauge", metrics=[Metric(full, dict(labels), float(value))])

    def collect(self) -> list[MetricFamily]:
        """Return the node's availability, load and request gauges."""
        labels = {"cluster_id": self.cluster_id, "node_id": self.node_id}
        with self._lock:
            _, can_accept = self._can_accept_locked(
                EgressRequest(egress_id="", request_type=RequestType.WEB)
            )
            load = self._cpu_load
            requests = dict(self._request_gauge)

        families = [
            self._gauge("egress", "available", 1 if self.service.is_idle() else 0, labels),
            self._gauge(
                "egress",
                "can_accept_request",
                1 if (not self.service.is_disabled() and can_accept) else 0,
                labels,
            ),
            self._gauge("egress", "is_disabled", 1 if self.service.is_disabled() else 0, labels),
            self._gauge("egress", "is_terminating", 1 if self.service.is_terminating() else 0, labels),
            self._gauge("node", "cpu_load", load, {**labels, "node_type": "EGRESS"}),
        ]
        request_name = "livekit_egress_requests"
        families.append(
            MetricFamily(
                name=request_name,
                type="gauge",
                metrics=[
                    Metric(request_name, {**labels, "type": t}, v) for t, v in sorted(requests.items())
                ],
            )
        )
        return sorted(families, key=lambda f: f.name)