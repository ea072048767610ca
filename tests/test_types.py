import pytest

from egressnode.types import (
    CODEC_COMPATIBILITY,
    DEFAULT_AUDIO_CODECS,
    FILE_EXTENSION_FOR_OUTPUT_TYPE,
    STREAM_OUTPUT_TYPES,
    FileExtension,
    MimeType,
    OutputType,
    get_map_intersection,
    get_output_type_compatible_with_codecs,
    is_output_type_compatible_with_codecs,
)


def test_get_map_intersection():
    codecs: dict[MimeType, bool] = {}

    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.UNKNOWN_FILE])
    assert res == set()

    codecs[MimeType.H264] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.OGG])
    assert res == set()

    codecs[MimeType.VP8] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.MP4])
    assert res == {MimeType.H264}


def test_get_map_intersection_ignores_false_values_in_second():
    res = get_map_intersection({MimeType.AAC: True}, {MimeType.AAC: False})
    assert res == set()


def test_get_output_types_compatible_with_codecs():
    output_types: list[OutputType] = []
    audio_codecs: dict[MimeType, bool] = {}
    video_codecs: dict[MimeType, bool] = {}

    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    output_types += [OutputType.OGG, OutputType.MP4]
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    audio_codecs[MimeType.AAC] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.VP8] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.H264] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == OutputType.MP4


def test_none_codecs_place_no_constraint():
    res = get_output_type_compatible_with_codecs(
        [OutputType.OGG, OutputType.MP4], {MimeType.OPUS}, None
    )
    assert res is OutputType.OGG


def test_unknown_file_is_empty_string():
    assert get_output_type_compatible_with_codecs([], None, None) is OutputType.UNKNOWN_FILE
    assert OutputType("") is OutputType.UNKNOWN_FILE


@pytest.mark.parametrize(
    "output_type, codecs, expected",
    [
        (OutputType.IVF, {MimeType.VP9}, True),
        (OutputType.IVF, {MimeType.H264}, False),
        (OutputType.RTMP, {MimeType.OPUS, MimeType.AAC}, True),
        (OutputType.JSON, {MimeType.AAC}, False),
        (OutputType.MP4, set(), False),
    ],
)
def test_is_output_type_compatible(output_type, codecs, expected):
    assert is_output_type_compatible_with_codecs(output_type, codecs) is expected


def test_default_codecs_are_compatible_with_their_output():
    for output_type, codec in DEFAULT_AUDIO_CODECS.items():
        assert is_output_type_compatible_with_codecs(output_type, [codec])


def test_lookup_tables_with_compatibility():
    hls = get_output_type_compatible_with_codecs(
        [OutputType.OGG, OutputType.HLS], {MimeType.AAC}, {MimeType.H264}
    )
    assert hls is OutputType.HLS
    assert FILE_EXTENSION_FOR_OUTPUT_TYPE[hls] is FileExtension.M3U8

    assert is_output_type_compatible_with_codecs(STREAM_OUTPUT_TYPES["wss"], {MimeType.RAW_AUDIO})
    assert not is_output_type_compatible_with_codecs(STREAM_OUTPUT_TYPES["rtmp"], {MimeType.OPUS})