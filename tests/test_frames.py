import asyncio
import json

import pytest

from conftest import aiter_chunks, frame
from step_proxy.events import DoneEvent, ErrorEvent, SearchEvent, SearchResult, TextEvent, parse_event
from step_proxy.exceptions import StreamDecodeError
from step_proxy.frames import FrameDecoder, encode_frame, iter_frames, iter_payloads


PAYLOADS = [
    {"textEvent": {"text": "你好"}},
    {"pipelineEvent": {"eventSearch": {"results": [{"title": "A", "url": "http://a"}]}}},
    {"doneEvent": {}},
]


def _stream() -> bytes:
    return b"".join(frame(p) for p in PAYLOADS)


def _decode_all(chunks: list[bytes]) -> list[bytes]:
    decoder = FrameDecoder()
    out: list[bytes] = []
    for chunk in chunks:
        out.extend(f.payload for f in decoder.feed(chunk))
    assert decoder.pending == 0
    return out


def test_encode_frame_header_is_flag_and_big_endian_length():
    data = encode_frame(b"abc")
    assert data[:5] == b"\x00\x00\x00\x00\x03"
    assert data[5:] == b"abc"


def test_whole_stream_decodes_in_order():
    payloads = _decode_all([_stream()])
    assert [json.loads(p) for p in payloads] == PAYLOADS


def test_any_two_split_points_yield_same_payloads():
    data = _stream()
    expected = _decode_all([data])
    for i in range(len(data) + 1):
        for j in range(i, len(data) + 1, 3):
            assert _decode_all([data[:i], data[i:j], data[j:]]) == expected


def test_split_inside_header_waits_for_rest():
    decoder = FrameDecoder()
    data = frame({"doneEvent": {}})
    assert decoder.feed(data[:2]) == []
    assert decoder.feed(b"") == []
    assert decoder.feed(data[2:4]) == []
    frames = decoder.feed(data[4:])
    assert len(frames) == 1
    assert json.loads(frames[0].payload) == {"doneEvent": {}}


def test_byte_at_a_time():
    data = _stream()
    assert _decode_all([data[i : i + 1] for i in range(len(data))]) == _decode_all([data])


def test_empty_payload_frame():
    assert _decode_all([encode_frame(b"") + encode_frame(b"x")]) == [b"", b"x"]


def test_nonzero_flag_is_logged_and_kept(caplog):
    decoder = FrameDecoder()
    with caplog.at_level("WARNING"):
        frames = decoder.feed(encode_frame(b"{}", flag=0x02))
    assert frames[0].flag == 0x02
    assert "unexpected flag" in caplog.text


def test_oversized_declared_length_is_decode_error():
    decoder = FrameDecoder(max_frame_size=10)
    with pytest.raises(StreamDecodeError):
        decoder.feed(encode_frame(b"x" * 11))


def test_iter_frames_over_async_chunks():
    data = _stream()

    async def collect():
        return [f.payload async for f in iter_frames(aiter_chunks([data[:3], data[3:20], data[20:]]))]

    assert asyncio.run(collect()) == _decode_all([data])


def test_iter_payloads_parses_events():
    async def collect():
        return [e async for e in iter_payloads(aiter_chunks([_stream()]), parse_event)]

    events = asyncio.run(collect())
    assert events == [
        TextEvent("你好"),
        SearchEvent((SearchResult("A", "http://a"),)),
        DoneEvent(),
    ]


def test_invalid_json_payload_aborts_stream():
    data = frame({"textEvent": {"text": "a"}}) + encode_frame(b"not json") + frame({"doneEvent": {}})
    seen = []

    async def collect():
        async for e in iter_payloads(aiter_chunks([data]), parse_event):
            seen.append(e)

    with pytest.raises(StreamDecodeError):
        asyncio.run(collect())
    assert seen == [TextEvent("a")]


def test_parse_event_variants():
    assert parse_event({"error": {"code": "x", "message": "boom"}}) == ErrorEvent("x", "boom")
    assert parse_event({"textEvent": {"text": "t"}, "extra": 1}) == TextEvent("t")
    assert parse_event({"textEvent": {"text": ""}}) is None
    assert parse_event({"pipelineEvent": {"other": {}}}) is None
    assert parse_event({"unknown": True}) is None
    assert parse_event([1, 2]) is None
