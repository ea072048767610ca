"""Interpretation of pipeline log lines, bus errors and element messages."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any


class PipelineError(Exception):
    """A fatal or malformed pipeline error."""


class DebugLevel(IntEnum):
    NONE = 0
    ERROR = 1
    WARNING = 2
    FIXME = 3
    INFO = 4
    DEBUG = 5
    LOG = 6
    TRACE = 7
    MEMDUMP = 9


_LEVEL_NAMES: dict[DebugLevel, str] = {
    DebugLevel.ERROR: "error",
    DebugLevel.WARNING: "warning",
    DebugLevel.FIXME: "fixme",
    DebugLevel.INFO: "info",
    DebugLevel.DEBUG: "debug",
    DebugLevel.LOG: "log",
    DebugLevel.TRACE: "trace",
    DebugLevel.MEMDUMP: "memdump",
}

IGNORED: frozenset[str] = frozenset(
    {
        "Called from wrong thread",
        "Could not request a keyframe. Files may not split at the exact location they should",
        "Latency query failed",
        "can't find exact taps",
        "Can't copy metadata because input buffer disappeared",
        "error reading data -1 (reason: Success), skipping segment",
        "gst_audio_resample_check_discont",
        "stream-start event without group-id. Consider implementing group-id handling "
        "in the upstream elements",
        "Creating random stream-id, consider implementing a deterministic way of "
        "creating a stream-id",
        "Subclass should call gst_aggregator_selected_samples() from its aggregate "
        "implementation.",
    }
)

CATEGORY_RTMP_CLIENT = "rtmpclient"
FUNCTION_SEND_CREATE_STREAM = "send_create_stream"

MSG_CLOCK_PROBLEM = "GStreamer error: clock problem."

ELEMENT_APP_SRC = "GstAppSrc"
ELEMENT_RTMP2_SINK = "GstRtmp2Sink"
ELEMENT_SPLIT_MUX_SINK = "GstSplitMuxSink"
ELEMENT_SRT_SINK = "GstSRTSink"

MSG_STREAMING_NOT_NEGOTIATED = "streaming stopped, reason not-negotiated (-4)"
MSG_MUXER = ":muxer"

MSG_FIRST_SAMPLE_METADATA = "FirstSampleMetadata"
MSG_FRAGMENT_OPENED = "splitmuxsink-fragment-opened"
MSG_FRAGMENT_CLOSED = "splitmuxsink-fragment-closed"
MSG_MULTI_FILE_SINK = "GstMultiFileSink"

# file.c(line): method_name (): /GstPipeline:pipeline/GstBin:bin_name/GstElement:element_name:\nError message
_GST_DEBUG = re.compile(r"(.*?)GstPipeline:pipeline/GstBin:(.*?)/(.*?):([^:]*)(:\n)?(.*)", re.DOTALL)


@dataclass(frozen=True)
class DebugInfo:
    """Element type, element name and message taken from a debug string."""

    element: str
    name: str
    message: str


class ErrorAction(Enum):
    """What to do about a pipeline error."""

    RESET_STREAM = "reset_stream"  # try reconnecting; fail the stream if that does not work
    STREAM_FAILED = "stream_failed"
    STREAM_STOPPED = "stream_stopped"
    IGNORE = "ignore"
    FATAL = "fatal"


def parse_debug_info(debug_string: str) -> DebugInfo:
    """Split a pipeline error's debug string into element, name and message."""
    match = _GST_DEBUG.search(debug_string)
    if match is None:
        raise PipelineError(f"unrecognized debug info: {debug_string!r}")
    return DebugInfo(element=match.group(3), name=match.group(4), message=match.group(6))


def should_ignore(message: str, function: str) -> bool:
    """Return True for known noisy log messages or functions."""
    return message in IGNORED or function in IGNORED


def format_gst_log(
    category: str,
    level: int,
    file: str,
    function: str,
    line: int,
    message: str,
) -> tuple[str, str] | None:
    """Format a pipeline log line as ``(message, caller)``.

    Returns None for unknown levels, ignored messages and the RTMP client
    category, whose lines are handled through ``stream_id_from_create_stream``.
    """
    try:
        level_name = _LEVEL_NAMES[DebugLevel(level)]
    except (ValueError, KeyError):
        return None
    if should_ignore(message, function) or category == CATEGORY_RTMP_CLIENT:
        return None
    if function:
        text = f"[{category} {level_name}] {function}: {message}"
    else:
        text = f"[{category} {level_name}] {message}"
    return text, f"{file}:{line}"


def stream_id_from_create_stream(message: str) -> str:
    """Extract the quoted stream id from an RTMP create-stream log message."""
    parts = message.split("'")
    if len(parts) < 2:
        raise ValueError(f"no quoted stream id in {message!r}")
    return parts[1]


def _stream_name(name: str) -> str:
    parts = name.split("_")
    if len(parts) < 2:
        raise PipelineError(f"unexpected sink name {name!r}")
    return parts[1]


def classify_error(
    element: str, name: str, message: str, eos_sent: bool
) -> tuple[ErrorAction, str | None]:
    """Decide how to handle a pipeline error.

    Returns the action and its target: the stream name for stream sinks,
    the source name for a stopped app source, otherwise None.
    """
    if element == ELEMENT_RTMP2_SINK:
        stream = _stream_name(name)
        return (ErrorAction.STREAM_FAILED if eos_sent else ErrorAction.RESET_STREAM), stream
    if element == ELEMENT_SRT_SINK:
        return ErrorAction.STREAM_FAILED, _stream_name(name)
    if element == ELEMENT_APP_SRC and message == MSG_STREAMING_NOT_NEGOTIATED:
        return ErrorAction.STREAM_STOPPED, name
    if element == ELEMENT_SPLIT_MUX_SINK and message == MSG_MUXER and eos_sent:
        return ErrorAction.IGNORE, None
    return ErrorAction.FATAL, None


def _get_field(structure: Mapping[str, Any], key: str) -> Any:
    try:
        return structure[key]
    except KeyError:
        raise PipelineError(f"field {key!r} not found") from None


def _get_str_and_time(
    structure: Mapping[str, Any], location_key: str, time_key: str
) -> tuple[str, int]:
    location = _get_field(structure, location_key)
    if not isinstance(location, str):
        raise PipelineError("invalid type for location")
    value = _get_field(structure, time_key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise PipelineError("invalid type for time")
    return location, value


def get_segment_params(structure: Mapping[str, Any]) -> tuple[str, int]:
    """Return ``(location, running_time)`` from a fragment message."""
    return _get_str_and_time(structure, "location", "running-time")


def get_image_information(structure: Mapping[str, Any]) -> tuple[str, int]:
    """Return ``(filename, timestamp)`` from a multi-file sink message."""
    return _get_str_and_time(structure, "filename", "timestamp")


def get_first_sample_start_date(structure: Mapping[str, Any]) -> datetime:
    """Return the start date, in UTC, carried by a first-sample metadata message."""
    value = _get_field(structure, "StartDate")
    if isinstance(value, bool) or not isinstance(value, int):
        raise PipelineError("invalid type for StartDate")
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    return epoch + timedelta(microseconds=value // 1000)