"""Upload and backup metrics recorded by a single egress handler."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from egressnode.metrics import Metric, MetricFamily

UPLOADS_NAME = "livekit_egress_pipeline_uploads"
UPLOADS_HELP = "Number of uploads per pipeline with type and status labels"
RESPONSE_TIME_NAME = "livekit_egress_pipline_upload_response_time_ms"
RESPONSE_TIME_HELP = "A histogram of latencies for upload requests in milliseconds."
BACKUP_NAME = "livekit_egress_backup_storage_writes"
BACKUP_HELP = "number of writes to backup storage location by output type"
SEGMENTS_GAUGE_NAME = "livekit_egress_segments_uploads_channel_size"
SEGMENTS_GAUGE_HELP = "number of segment uploads pending in channel"
PLAYLIST_GAUGE_NAME = "livekit_egress_playlist_uploads_channel_size"
PLAYLIST_GAUGE_HELP = "number of playlist updates pending in channel"

RESPONSE_TIME_BUCKETS: tuple[float, ...] = (
    10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 15000, 20000, 30000,
)


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else repr(float(bound))


@dataclass
class _Histogram:
    buckets: list[int] = field(default_factory=lambda: [0] * len(RESPONSE_TIME_BUCKETS))
    total: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        for index, bound in enumerate(RESPONSE_TIME_BUCKETS):
            if value <= bound:
                self.buckets[index] += 1
        self.total += value
        self.count += 1


class HandlerMonitor:
    """Counters, histograms and gauges for one handler, labelled with its ids."""

    def __init__(self, node_id: str, cluster_id: str, egress_id: str) -> None:
        self.const_labels = {"node_id": node_id, "cluster_id": cluster_id, "egress_id": egress_id}
        self._lock = threading.Lock()
        self._uploads: dict[tuple[str, str], float] = {}
        self._response_times: dict[tuple[str, str], _Histogram] = {}
        self._backup_writes: dict[str, float] = {}
        self._gauges: dict[str, tuple[str, Callable[[], float]]] = {}

    def _record_upload(self, upload_type: str, status: str, elapsed: float) -> None:
        key = (upload_type, status)
        with self._lock:
            self._uploads[key] = self._uploads.get(key, 0.0) + 1
            self._response_times.setdefault(key, _Histogram()).observe(elapsed)

    def inc_upload_count_success(self, upload_type: str, elapsed: float) -> None:
        """Count a successful upload and record its duration in milliseconds."""
        self._record_upload(upload_type, "success", elapsed)

    def inc_upload_count_failure(self, upload_type: str, elapsed: float) -> None:
        """Count a failed upload and record its duration in milliseconds."""
        self._record_upload(upload_type, "failure", elapsed)

    def inc_backup_storage_writes(self, output_type: str) -> None:
        """Count a write to the backup storage location."""
        with self._lock:
            self._backup_writes[output_type] = self._backup_writes.get(output_type, 0.0) + 1

    def _register_gauge(self, name: str, help_text: str, fn: Callable[[], float]) -> None:
        with self._lock:
            if name in self._gauges:
                raise ValueError(f"duplicate metrics collector registration attempted: {name}")
            self._gauges[name] = (help_text, fn)

    def register_segments_channel_size_gauge(self, channel_size: Callable[[], float]) -> None:
        """Report pending segment uploads through the given callable."""
        self._register_gauge(SEGMENTS_GAUGE_NAME, SEGMENTS_GAUGE_HELP, channel_size)

    def register_playlist_channel_size_gauge(self, channel_size: Callable[[], float]) -> None:
        """Report pending playlist uploads through the given callable."""
        self._register_gauge(PLAYLIST_GAUGE_NAME, PLAYLIST_GAUGE_HELP, channel_size)

    def _labels(self, **extra: str) -> dict[str, str]:
        merged = {**self.const_labels, **extra}
        return {key: merged[key] for key in sorted(merged)}

    def collect(self) -> list[MetricFamily]:
        """Return the current values as metric families sorted by name."""
        with self._lock:
            uploads = dict(self._uploads)
            histograms = {
                key: _Histogram(list(h.buckets), h.total, h.count)
                for key, h in self._response_times.items()
            }
            backups = dict(self._backup_writes)
            gauges = dict(self._gauges)

        families: list[MetricFamily] = []

        if uploads:
            families.append(
                MetricFamily(
                    name=UPLOADS_NAME,
                    type="counter",
                    help=UPLOADS_HELP,
                    metrics=[
                        Metric(UPLOADS_NAME, self._labels(type=t, status=s), float(v))
                        for (t, s), v in sorted(uploads.items())
                    ],
                )
            )

        if histograms:
            samples: list[Metric] = []
            for (upload_type, status), hist in sorted(histograms.items()):
                labels = self._labels(type=upload_type, status=status)
                for bound, count in zip(RESPONSE_TIME_BUCKETS, hist.buckets):
                    samples.append(
                        Metric(
                            f"{RESPONSE_TIME_NAME}_bucket",
                            {**labels, "le": _format_bound(bound)},
                            float(count),
                        )
                    )
                samples.append(
                    Metric(f"{RESPONSE_TIME_NAME}_bucket", {**labels, "le": "+Inf"}, float(hist.count))
                )
                samples.append(Metric(f"{RESPONSE_TIME_NAME}_sum", dict(labels), float(hist.total)))
                samples.append(Metric(f"{RESPONSE_TIME_NAME}_count", dict(labels), float(hist.count)))
            families.append(
                MetricFamily(
                    name=RESPONSE_TIME_NAME, type="histogram", help=RESPONSE_TIME_HELP, metrics=samples
                )
            )

        if backups:
            families.append(
                MetricFamily(
                    name=BACKUP_NAME,
                    type="counter",
                    help=BACKUP_HELP,
                    metrics=[
                        Metric(BACKUP_NAME, self._labels(output_type=t), float(v))
                        for t, v in sorted(backups.items())
                    ],
                )
            )

        for name, (help_text, fn) in gauges.items():
            families.append(
                MetricFamily(
                    name=name,
                    type="gauge",
                    help=help_text,
                    metrics=[Metric(name, self._labels(), float(fn()))],
                )
            )

        return sorted(families, key=lambda family: family.name)