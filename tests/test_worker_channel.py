from __future__ import annotations

import socket
from typing import Any, List

import pytest

from worker_offload.core.codec import FrameBuffer, decode, encode
from worker_offload.core.contracts import CHANNEL_FD_ENV, ChannelMessage
from worker_offload.core.errors import ChannelClosedError
from worker_offload.worker.channel import ParentChannel, serve
from worker_offload.worker.compute import compute, long_computation


def _read_all(sock: socket.socket) -> List[ChannelMessage]:
    frames = FrameBuffer()
    out: List[ChannelMessage] = []
    sock.settimeout(5)
    while True:
        data = sock.recv(65536)
        if not data:
            break
        out.extend(decode(f) for f in frames.feed(data))
    return out


def test_from_env_requires_fd() -> None:
    with pytest.raises(ChannelClosedError):
        ParentChannel.from_env({})
    with pytest.raises(ChannelClosedError):
        ParentChannel.from_env({CHANNEL_FD_ENV: "not-a-number"})


def test_from_env_attaches_inherited_fd() -> None:
    parent, child = socket.socketpair()
    with parent:
        ch = ParentChannel.from_env({CHANNEL_FD_ENV: str(child.detach())})
        with ch:
            ch.send_message("hello", {"x": 1})
        msgs = _read_all(parent)
    assert [(m.type, m.payload) for m in msgs] == [("hello", {"x": 1})]


def test_recv_skips_malformed_and_returns_none_on_eof() -> None:
    parent, child = socket.socketpair()
    with parent:
        ch = ParentChannel(child)
        good = encode(ChannelMessage(type="ping", payload=1))
        parent.sendall(b"garbage\n" + good[:5])
        parent.sendall(good[5:])
        parent.shutdown(socket.SHUT_WR)

        msg = ch.recv()
        assert msg is not None
        assert (msg.type, msg.payload) == ("ping", 1)
        assert ch.recv() is None
        assert ch.recv() is None
        ch.close()


def test_serve_answers_each_start_and_routes_other_messages() -> None:
    parent, child = socket.socketpair()
    seen: List[Any] = []

    def handler(task: Any, channel: ParentChannel) -> Any:
        if task == "explode":
            raise KeyError("missing")
        channel.send_message("progress", task, session_id="s1")
        return {"doubled": task * 2}

    with parent:
        parent.sendall(
            encode(ChannelMessage(type="config", payload={"a": 1}))
            + encode(ChannelMessage.start(21, session_id="s1"))
            + encode(ChannelMessage.start("explode", session_id="s2"))
        )
        parent.shutdown(socket.SHUT_WR)

        ch = ParentChannel(child)
        handled = serve(handler, channel=ch, on_message=lambda m, c: seen.append(m.payload))
        assert handled == 1
        # 调用方传入的 channel 不由 serve 关闭
        ch.send_message("bye")
        ch.close()

        msgs = _read_all(parent)

    assert seen == [{"a": 1}]
    assert [(m.type, m.session_id) for m in msgs] == [
        ("progress", "s1"),
        ("result", "s1"),
        ("error", "s2"),
        ("bye", None),
    ]
    assert msgs[1].payload == {"doubled": 42}
    assert msgs[2].payload["kind"] == "KeyError"


def test_send_after_close_raises() -> None:
    parent, child = socket.socketpair()
    parent.close()
    ch = ParentChannel(child)
    ch.close()
    with pytest.raises(ChannelClosedError):
        ch.send_result(1)


def test_compute_ops() -> None:
    assert long_computation(1_000_000) == 500000500000
    assert compute({"op": "sum", "to": 10}, None) == 55
    assert compute({"op": "echo", "value": [1, "x"]}, None) == [1, "x"]
    assert compute({"op": "sleep", "ms": 1, "value": "z"}, None) == "z"
    with pytest.raises(ValueError):
        compute({"op": "nope"}, None)
    with pytest.raises(ValueError):
        compute(42, None)
