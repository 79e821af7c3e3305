from __future__ import annotations

import json
import logging

import pytest

from worker_offload.core.codec import INCOMPLETE, FrameBuffer, decode, encode
from worker_offload.core.contracts import ChannelMessage
from worker_offload.core.errors import MalformedMessageError


def test_encode_is_single_compact_line() -> None:
    msg = ChannelMessage(type="progress", session_id="s1", payload={"text": "a\nb", "n": [1, 2.5, None, True]})
    data = encode(msg)

    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert b", " not in data and b": " not in data
    assert json.loads(data) == {"type": "progress", "session_id": "s1", "payload": {"text": "a\nb", "n": [1, 2.5, None, True]}}


def test_decode_restores_message() -> None:
    msg = ChannelMessage.result({"中文": "值", "nested": {"k": [1, {"x": None}]}}, session_id="abc")
    assert decode(encode(msg)) == msg


def test_encode_rejects_non_json_payload() -> None:
    with pytest.raises(ValueError):
        encode(ChannelMessage(type="result", payload=float("nan")))


def test_decode_without_trailing_newline_is_incomplete() -> None:
    out = decode(b'{"type":"result"')
    assert out is INCOMPLETE
    assert not out


@pytest.mark.parametrize(
    "frame",
    [
        b"\xff\xfe\n",
        b"   \n",
        b"not json\n",
        b"[1,2]\n",
        b'{"payload":1}\n',
        b'{"type":"x","extra":1}\n',
    ],
)
def test_decode_malformed_frames(frame: bytes) -> None:
    with pytest.raises(MalformedMessageError) as ei:
        decode(frame)
    assert ei.value.code == "MALFORMED_MESSAGE"
    assert "frame_head" in ei.value.details


def test_frame_buffer_reassembles_split_frames() -> None:
    a = encode(ChannelMessage(type="a", payload=1))
    b = encode(ChannelMessage(type="b", payload="two"))
    stream = a + b
    buf = FrameBuffer()

    frames = []
    for i in range(len(stream)):
        frames.extend(buf.feed(stream[i : i + 1]))

    assert frames == [a, b]
    assert buf.pending_bytes() == 0
    assert [decode(f).type for f in frames] == ["a", "b"]


def test_frame_buffer_drops_oversized_frame_and_recovers(caplog: pytest.LogCaptureFixture) -> None:
    buf = FrameBuffer(max_frame_bytes=64)
    ok = encode(ChannelMessage(type="ok"))
    huge = b"x" * 200

    with caplog.at_level(logging.WARNING, logger="worker_offload.core.codec"):
        frames = buf.feed(huge[:100])
        frames += buf.feed(huge[100:] + b"\n" + ok)

    assert frames == [ok]
    assert buf.dropped_frames == 1
    assert any("oversized" in r.getMessage() for r in caplog.records)


def test_frame_buffer_drops_complete_oversized_frame() -> None:
    buf = FrameBuffer(max_frame_bytes=8)
    ok = b'{"a":1}\n'
    assert buf.feed(b"0123456789\n" + ok) == [ok]
    assert buf.dropped_frames == 1


def test_frame_buffer_rejects_invalid_limit() -> None:
    with pytest.raises(ValueError):
        FrameBuffer(max_frame_bytes=0)
