import pytest

from egressnode.metrics import (
    Metric,
    MetricFamily,
    MetricsService,
    apply_default_label,
    deserialize_metrics,
    parse_metric_families,
    render_metric_families,
)

SAMPLE = """\
# HELP livekit_egress_requests Number of requests
# TYPE livekit_egress_requests gauge
livekit_egress_requests{type="web"} 3
livekit_egress_requests{type="track",egress_id="EG_other"} 1
"""

HISTOGRAM = """\
# TYPE latency_ms histogram
latency_ms_bucket{le="10"} 1
latency_ms_bucket{le="+Inf"} 2
latency_ms_sum 25
latency_ms_count 2
"""


def test_parse_gauge_family():
    families = parse_metric_families(SAMPLE)
    family = families["livekit_egress_requests"]
    assert family.type == "gauge"
    assert family.help == "Number of requests"
    assert [m.labels for m in family.metrics] == [
        {"type": "web"},
        {"type": "track", "egress_id": "EG_other"},
    ]
    assert [m.value for m in family.metrics] == [3.0, 1.0]


def test_histogram_samples_belong_to_family():
    families = parse_metric_families(HISTOGRAM)
    assert list(families) == ["latency_ms"]
    names = [m.name for m in families["latency_ms"].metrics]
    assert names == ["latency_ms_bucket", "latency_ms_bucket", "latency_ms_sum", "latency_ms_count"]


def test_special_values_and_timestamp():
    families = parse_metric_families('x{a="b"} +Inf 1700000000000\ny NaN\n')
    assert families["x"].metrics[0].value == float("inf")
    assert families["x"].metrics[0].timestamp_ms == 1700000000000
    assert families["x"].type == "untyped"
    value = families["y"].metrics[0].value
    assert value != value


def test_render_round_trip():
    families = parse_metric_families(SAMPLE + HISTOGRAM)
    assert parse_metric_families(render_metric_families(families)) == families


def test_label_escaping_round_trip():
    tricky = 'a"b\\c\nd'
    family = MetricFamily(
        name="m", type="counter", help="line\nbreak", metrics=[Metric("m", {"path": tricky}, 2.5)]
    )
    parsed = parse_metric_families(render_metric_families([family]))
    assert parsed["m"] == family


@pytest.mark.parametrize(
    "text",
    [
        'metric{a="x" 1\n',
        "metric abc\n",
        "# TYPE m gauge\n# TYPE m gauge\n",
        "# TYPE m bogus\n",
        "m 1\n# TYPE m gauge\n",
        'm{a="1",a="2"} 1\n',
    ],
)
def test_malformed_input_raises(text):
    with pytest.raises(ValueError):
        parse_metric_families(text)


def test_deserialize_adds_label_only_when_missing():
    families = deserialize_metrics("EG_abc", SAMPLE)
    labels = [m.labels["egress_id"] for m in families[0].metrics]
    assert labels == ["EG_abc", "EG_other"]


def test_deserialize_bad_input_yields_nothing():
    assert deserialize_metrics("EG_abc", "not a metric line at all {") == []


def test_apply_default_label_on_list():
    family = MetricFamily(name="m", metrics=[Metric("m", {}, 1.0)])
    apply_default_label("EG_x", [family])
    assert family.metrics[0].labels == {"egress_id": "EG_x"}


class _FakeGatherer:
    def __init__(self, families):
        self.families = families

    def gather(self):
        return self.families


def test_service_drains_pending_metrics():
    service = MetricsService()
    service.store_process_ended_metrics("EG_1", SAMPLE)
    first = service.gather()
    assert [f.name for f in first] == ["livekit_egress_requests"]
    assert all(m.labels["egress_id"] in {"EG_1", "EG_other"} for m in first[0].metrics)
    assert service.gather() == []


def test_service_ignores_bad_ended_metrics():
    service = MetricsService()
    service.store_process_ended_metrics("EG_1", "garbage {")
    assert service.gather() == []


def test_service_merges_gatherers_by_name():
    live = _FakeGatherer(deserialize_metrics("EG_live", SAMPLE))
    other = _FakeGatherer([MetricFamily(name="aaa", type="gauge", metrics=[Metric("aaa", {}, 1.0)])])
    service = MetricsService(lambda: [live, other])
    service.store_process_ended_metrics("EG_done", SAMPLE)
    gathered = service.gather()
    assert [f.name for f in gathered] == ["aaa", "livekit_egress_requests"]
    ids = {m.labels["egress_id"] for m in gathered[1].metrics}
    assert ids == {"EG_done", "EG_live", "EG_other"}
    assert len(gathered[1].metrics) == 4
    assert len(live.families[0].metrics) == 2