"""Prometheus text-format metric families and the service that aggregates them."""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

EGRESS_ID_LABEL = "egress_id"

METRIC_TYPES = frozenset({"counter", "gauge", "histogram", "summary", "untyped"})
_COMPOUND_TYPES = frozenset({"histogram", "summary"})
_COMPOUND_SUFFIXES = ("_bucket", "_sum", "_count")

_NAME = r"[a-zA-Z_:][a-zA-Z0-9_:]*"
_META = re.compile(rf"^#\s*(HELP|TYPE)\s+({_NAME})(?:[ \t]+(.*))?$")
_SAMPLE = re.compile(rf"^({_NAME})(?:\{{(.*)\}})?\s+(\S+)(?:\s+(-?\d+))?\s*$")
_LABEL = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"((?:[^"\\]|\\.)*)"\s*')
_ESCAPE = re.compile(r"\\(.)", re.DOTALL)


@dataclass
class Metric:
    """One sample of a metric family."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    timestamp_ms: int | None = None


@dataclass
class MetricFamily:
    """A named, typed group of samples."""

    name: str
    type: str = "untyped"
    help: str = ""
    metrics: list[Metric] = field(default_factory=list)


def _unescape(text: str) -> str:
    return _ESCAPE.sub(lambda m: "\n" if m.group(1) == "n" else m.group(1), text)


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _parse_labels(text: str, lineno: int) -> dict[str, str]:
    labels: dict[str, str] = {}
    pos = 0
    while text[pos:].strip():
        match = _LABEL.match(text, pos)
        if match is None:
            raise ValueError(f"line {lineno}: malformed label set {text!r}")
        key = match.group(1)
        if key in labels:
            raise ValueError(f"line {lineno}: duplicate label {key!r}")
        labels[key] = _unescape(match.group(2))
        pos = match.end()
        if pos < len(text):
            if text[pos] != ",":
                raise ValueError(f"line {lineno}: expected ',' in label set {text!r}")
            pos += 1
    return labels


def _family_for(families: dict[str, MetricFamily], sample_name: str) -> MetricFamily:
    family = families.get(sample_name)
    if family is not None:
        return family
    for suffix in _COMPOUND_SUFFIXES:
        if sample_name.endswith(suffix):
            base = families.get(sample_name[: -len(suffix)])
            if base is not None and base.type in _COMPOUND_TYPES:
                return base
    family = MetricFamily(name=sample_name)
    families[sample_name] = family
    return family


def parse_metric_families(text: str) -> dict[str, MetricFamily]:
    """Parse Prometheus text exposition format into families keyed by name.

    Raises ValueError on malformed input.
    """
    families: dict[str, MetricFamily] = {}
    helped: set[str] = set()
    typed: set[str] = set()

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            meta = _META.match(line)
            if meta is None:
                continue
            kind, name, rest = meta.group(1), meta.group(2), meta.group(3) or ""
            family = families.setdefault(name, MetricFamily(name=name))
            if kind == "HELP":
                if name in helped:
                    raise ValueError(f"line {lineno}: second HELP line for {name!r}")
                helped.add(name)
                family.help = _unescape(rest)
            else:
                metric_type = rest.strip()
                if name in typed:
                    raise ValueError(f"line {lineno}: second TYPE line for {name!r}")
                if family.metrics:
                    raise ValueError(f"line {lineno}: TYPE for {name!r} after its samples")
                if metric_type not in METRIC_TYPES:
                    raise ValueError(f"line {lineno}: unknown metric type {metric_type!r}")
                typed.add(name)
                family.type = metric_type
            continue

        sample = _SAMPLE.match(line)
        if sample is None:
            raise ValueError(f"line {lineno}: malformed sample {line!r}")
        name, label_text, value_text, timestamp = sample.groups()
        labels = _parse_labels(label_text or "", lineno)
        try:
            value = float(value_text)
        except ValueError:
            raise ValueError(f"line {lineno}: invalid value {value_text!r}") from None
        _family_for(families, name).metrics.append(
            Metric(
                name=name,
                labels=labels,
                value=value,
                timestamp_ms=int(timestamp) if timestamp is not None else None,
            )
        )

    return families


def render_metric_families(
    families: Mapping[str, MetricFamily] | Iterable[MetricFamily],
) -> str:
    """Render families in Prometheus text exposition format."""
    items = families.values() if isinstance(families, Mapping) else families
    lines: list[str] = []
    for family in items:
        if family.help:
            lines.append(f"# HELP {family.name} {_escape_help(family.help)}")
        lines.append(f"# TYPE {family.name} {family.type}")
        for metric in family.metrics:
            sample = metric.name
            if metric.labels:
                pairs = ",".join(
                    f'{key}="{_escape_label(value)}"' for key, value in metric.labels.items()
                )
                sample += "{" + pairs + "}"
            sample += " " + _format_value(metric.value)
            if metric.timestamp_ms is not None:
                sample += f" {metric.timestamp_ms}"
            lines.append(sample)
    return "\n".join(lines) + "\n" if lines else ""


def apply_default_label(
    egress_id: str, families: Mapping[str, MetricFamily] | Iterable[MetricFamily]
) -> None:
    """Add an egress_id label to every metric that does not already have one."""
    items = families.values() if isinstance(families, Mapping) else families
    for family in items:
        for metric in family.metrics:
            metric.labels.setdefault(EGRESS_ID_LABEL, egress_id)


def deserialize_metrics(egress_id: str, text: str) -> list[MetricFamily]:
    """Parse a handler's metrics and label them with its egress id.

    Unparseable input is logged and yields no families.
    """
    try:
        families = parse_metric_families(text)
    except ValueError as exc:
        log.warning("failed to parse metrics from handler: %s (egress_id=%s)", exc, egress_id)
        return []
    apply_default_label(egress_id, families)
    return list(families.values())


def _gather_from(source: Any) -> list[MetricFamily]:
    if hasattr(source, "gather"):
        return list(source.gather())
    return list(source())


class MetricsService:
    """Aggregates metrics from live handlers and from handlers that have ended."""

    def __init__(self, gatherers: Callable[[], Iterable[Any]] | None = None) -> None:
        self._gatherers = gatherers
        self._lock = threading.Lock()
        self._pending: list[MetricFamily] = []

    def store_process_ended_metrics(self, egress_id: str, metrics: str) -> None:
        """Keep a finished handler's metrics until the next gather."""
        families = deserialize_metrics(egress_id, metrics)
        with self._lock:
            self._pending.extend(families)

    def gather(self) -> list[MetricFamily]:
        """Return merged families, sorted by name; pending metrics are drained."""
        with self._lock:
            pending, self._pending = self._pending, []

        sources: list[list[MetricFamily]] = [pending]
        if self._gatherers is not None:
            for gatherer in self._gatherers():
                sources.append(_gather_from(gatherer))

        merged: dict[str, MetricFamily] = {}
        for families in sources:
            for family in families:
                existing = merged.get(family.name)
                if existing is None:
                    merged[family.name] = MetricFamily(
                        name=family.name,
                        type=family.type,
                        help=family.help,
                        metrics=list(family.metrics),
                    )
                elif existing.type != family.type:
                    log.warning(
                        "metric family %s gathered with inconsistent types %s and %s",
                        family.name,
                        existing.type,
                        family.type,
                    )
                else:
                    existing.metrics.extend(family.metrics)
        return [merged[name] for name in sorted(merged)]