"""Request, codec and output type definitions and codec compatibility helpers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Hashable, TypeVar

K = TypeVar("K", bound=Hashable)


class RequestType(StrEnum):
    ROOM_COMPOSITE = "room_composite"
    WEB = "web"
    PARTICIPANT = "participant"
    TRACK_COMPOSITE = "track_composite"
    TRACK = "track"


class SourceType(StrEnum):
    WEB = "web"
    SDK = "sdk"


class EgressType(StrEnum):
    STREAM = "stream"
    WEBSOCKET = "websocket"
    FILE = "file"
    SEGMENTS = "segments"
    IMAGES = "images"


class MimeType(StrEnum):
    AAC = "audio/aac"
    OPUS = "audio/opus"
    RAW_AUDIO = "audio/x-raw"
    H264 = "video/h264"
    VP8 = "video/vp8"
    VP9 = "video/vp9"
    JPEG = "image/jpeg"
    RAW_VIDEO = "video/x-raw"


class Profile(StrEnum):
    BASELINE = "baseline"
    MAIN = "main"
    HIGH = "high"


class OutputType(StrEnum):
    UNKNOWN_FILE = ""
    RAW = "audio/x-raw"
    OGG = "audio/ogg"
    IVF = "video/x-ivf"
    MP4 = "video/mp4"
    TS = "video/mp2t"
    WEBM = "video/webm"
    JPEG = "image/jpeg"
    RTMP = "rtmp"
    SRT = "srt"
    HLS = "application/x-mpegurl"
    JSON = "application/json"
    BLOB = "application/octet-stream"


class FileExtension(StrEnum):
    RAW = ".raw"
    OGG = ".ogg"
    IVF = ".ivf"
    MP4 = ".mp4"
    TS = ".ts"
    WEBM = ".webm"
    M3U8 = ".m3u8"
    JPEG = ".jpeg"


DEFAULT_AUDIO_CODECS: dict[OutputType, MimeType] = {
    OutputType.RAW: MimeType.RAW_AUDIO,
    OutputType.OGG: MimeType.OPUS,
    OutputType.MP4: MimeType.AAC,
    OutputType.TS: MimeType.AAC,
    OutputType.WEBM: MimeType.OPUS,
    OutputType.RTMP: MimeType.AAC,
    OutputType.SRT: MimeType.AAC,
    OutputType.HLS: MimeType.AAC,
}

DEFAULT_VIDEO_CODECS: dict[OutputType, MimeType] = {
    OutputType.IVF: MimeType.VP8,
    OutputType.MP4: MimeType.H264,
    OutputType.TS: MimeType.H264,
    OutputType.WEBM: MimeType.VP8,
    OutputType.RTMP: MimeType.H264,
    OutputType.SRT: MimeType.H264,
    OutputType.HLS: MimeType.H264,
}

FILE_EXTENSIONS: frozenset[FileExtension] = frozenset(FileExtension)

FILE_EXTENSION_FOR_OUTPUT_TYPE: dict[OutputType, FileExtension] = {
    OutputType.RAW: FileExtension.RAW,
    OutputType.OGG: FileExtension.OGG,
    OutputType.IVF: FileExtension.IVF,
    OutputType.MP4: FileExtension.MP4,
    OutputType.TS: FileExtension.TS,
    OutputType.WEBM: FileExtension.WEBM,
    OutputType.HLS: FileExtension.M3U8,
    OutputType.JPEG: FileExtension.JPEG,
}

CODEC_COMPATIBILITY: dict[OutputType, frozenset[MimeType]] = {
    OutputType.RAW: frozenset({MimeType.RAW_AUDIO}),
    OutputType.OGG: frozenset({MimeType.OPUS}),
    OutputType.IVF: frozenset({MimeType.VP8, MimeType.VP9}),
    OutputType.MP4: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.TS: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.WEBM: frozenset({MimeType.OPUS, MimeType.VP8, MimeType.VP9}),
    OutputType.RTMP: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.SRT: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.HLS: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.UNKNOWN_FILE: frozenset(
        {MimeType.AAC, MimeType.OPUS, MimeType.H264, MimeType.VP8, MimeType.VP9}
    ),
}

ALL_OUTPUT_AUDIO_CODECS: frozenset[MimeType] = frozenset(
    {MimeType.AAC, MimeType.OPUS, MimeType.RAW_AUDIO}
)
ALL_OUTPUT_VIDEO_CODECS: frozenset[MimeType] = frozenset({MimeType.H264})

AUDIO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.OGG, OutputType.MP4)
VIDEO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)
AUDIO_VIDEO_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)

TRACK_OUTPUT_TYPES: dict[MimeType, OutputType] = {
    MimeType.OPUS: OutputType.OGG,
    MimeType.H264: OutputType.MP4,
    MimeType.VP8: OutputType.WEBM,
    MimeType.VP9: OutputType.WEBM,
}

STREAM_OUTPUT_TYPES: dict[str, OutputType] = {
    "rtmp": OutputType.RTMP,
    "rtmps": OutputType.RTMP,
    "mux": OutputType.RTMP,
    "twitch": OutputType.RTMP,
    "srt": OutputType.SRT,
    "ws": OutputType.RAW,
    "wss": OutputType.RAW,
}


def get_output_type_compatible_with_codecs(
    types: Iterable[OutputType],
    audio_codecs: Iterable[MimeType] | None,
    video_codecs: Iterable[MimeType] | None,
) -> OutputType:
    """Return the first output type that accepts the given codecs.

    A codec collection of ``None`` places no constraint; an empty collection
    matches nothing. Returns ``OutputType.UNKNOWN_FILE`` when nothing fits.
    """
    audio = None if audio_codecs is None else list(audio_codecs)
    video = None if video_codecs is None else list(video_codecs)
    for output_type in types:
        if audio is not None and not is_output_type_compatible_with_codecs(output_type, audio):
            continue
        if video is not None and not is_output_type_compatible_with_codecs(output_type, video):
            continue
        return output_type
    return OutputType.UNKNOWN_FILE


def is_output_type_compatible_with_codecs(
    output_type: OutputType, codecs: Iterable[MimeType]
) -> bool:
    """Return True if the output type supports at least one of the codecs."""
    supported = CODEC_COMPATIBILITY.get(output_type, frozenset())
    return any(codec in supported for codec in codecs)


def _truthy_keys(items: Mapping[K, object] | Iterable[K]) -> set[K]:
    if isinstance(items, Mapping):
        return {key for key, value in items.items() if value}
    return set(items)


def get_map_intersection(
    a: Mapping[K, object] | Iterable[K], b: Mapping[K, object] | Iterable[K]
) -> set[K]:
    """Return the keys of ``a`` that are also (truthily) present in ``b``."""
    keys_b = _truthy_keys(b)
    keys_a = a.keys() if isinstance(a, Mapping) else set(a)
    return {key for key in keys_a if key in keys_b}