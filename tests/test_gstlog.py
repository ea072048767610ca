from datetime import datetime, timedelta, timezone

import pytest

from egressnode.gstlog import (
    DebugLevel,
    ErrorAction,
    PipelineError,
    classify_error,
    format_gst_log,
    get_first_sample_start_date,
    get_image_information,
    get_segment_params,
    parse_debug_info,
    should_ignore,
    stream_id_from_create_stream,
)


def test_parse_debug_info_with_message():
    debug = (
        "gstbasesrc.c(3127): gst_base_src_loop (): "
        "/GstPipeline:pipeline/GstBin:video_bin/GstAppSrc:app_video:\n"
        "streaming stopped, reason not-negotiated (-4)"
    )
    info = parse_debug_info(debug)
    assert info.element == "GstAppSrc"
    assert info.name == "app_video"
    assert info.message == "streaming stopped, reason not-negotiated (-4)"


def test_parse_debug_info_muxer_suffix():
    debug = "x.c(1): f (): /GstPipeline:pipeline/GstBin:segment_bin/GstSplitMuxSink:split_sink:muxer"
    info = parse_debug_info(debug)
    assert info.element == "GstSplitMuxSink"
    assert info.name == "split_sink"
    assert info.message == ":muxer"


def test_parse_debug_info_unrecognized():
    with pytest.raises(PipelineError):
        parse_debug_info("something else entirely")


def test_should_ignore():
    assert should_ignore("Latency query failed", "")
    assert should_ignore("anything", "gst_audio_resample_check_discont")
    assert not should_ignore("real problem", "some_function")


def test_format_gst_log_with_function():
    res = format_gst_log("basesrc", DebugLevel.WARNING, "a.c", "do_it", 12, "bad thing")
    assert res == ("[basesrc warning] do_it: bad thing", "a.c:12")


def test_format_gst_log_without_function():
    res = format_gst_log("basesrc", DebugLevel.ERROR, "a.c", "", 3, "bad thing")
    assert res == ("[basesrc error] bad thing", "a.c:3")


@pytest.mark.parametrize(
    "category, level, message",
    [
        ("basesrc", DebugLevel.NONE, "x"),
        ("basesrc", 42, "x"),
        ("basesrc", DebugLevel.INFO, "Called from wrong thread"),
        ("rtmpclient", DebugLevel.INFO, "x"),
    ],
)
def test_format_gst_log_dropped(category, level, message):
    assert format_gst_log(category, level, "f.c", "fn", 1, message) is None


def test_stream_id_from_create_stream():
    assert stream_id_from_create_stream("Sending createStream for 'key1' now") == "key1"
    with pytest.raises(ValueError):
        stream_id_from_create_stream("no quotes")


def test_classify_rtmp_errors():
    assert classify_error("GstRtmp2Sink", "sink_abc", "oops", False) == (
        ErrorAction.RESET_STREAM,
        "abc",
    )
    assert classify_error("GstRtmp2Sink", "sink_abc", "oops", True) == (
        ErrorAction.STREAM_FAILED,
        "abc",
    )


def test_classify_srt_and_app_src():
    assert classify_error("GstSRTSink", "sink_s1", "x", False) == (ErrorAction.STREAM_FAILED, "s1")
    assert classify_error(
        "GstAppSrc", "app_v", "streaming stopped, reason not-negotiated (-4)", False
    ) == (ErrorAction.STREAM_STOPPED, "app_v")
    assert classify_error("GstAppSrc", "app_v", "other", False) == (ErrorAction.FATAL, None)


def test_classify_split_mux_sink():
    assert classify_error("GstSplitMuxSink", "s", ":muxer", True) == (ErrorAction.IGNORE, None)
    assert classify_error("GstSplitMuxSink", "s", ":muxer", False) == (ErrorAction.FATAL, None)


def test_classify_bad_stream_name():
    with pytest.raises(PipelineError):
        classify_error("GstRtmp2Sink", "nounderscore", "x", False)


def test_segment_params():
    assert get_segment_params({"location": "/tmp/seg.ts", "running-time": 5}) == ("/tmp/seg.ts", 5)
    with pytest.raises(PipelineError, match="invalid type for location"):
        get_segment_params({"location": 1, "running-time": 5})
    with pytest.raises(PipelineError, match="invalid type for time"):
        get_segment_params({"location": "a", "running-time": "5"})
    with pytest.raises(PipelineError):
        get_segment_params({"location": "a"})


def test_image_information():
    assert get_image_information({"filename": "img.jpeg", "timestamp": 7}) == ("img.jpeg", 7)
    with pytest.raises(PipelineError):
        get_image_information({"timestamp": 7})


def test_first_sample_start_date():
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert get_first_sample_start_date({"StartDate": 0}) == epoch
    ns = 1_000_000_000
    assert get_first_sample_start_date({"StartDate": ns}) - epoch == timedelta(seconds=1)
    with pytest.raises(PipelineError):
        get_first_sample_start_date({})