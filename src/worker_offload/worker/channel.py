"""
Worker 侧通道（父进程 ProcessHandle 的镜像端）。

用法（worker 程序内）：

    from worker_offload.worker.channel import serve

    def handle(task, channel):
        return sum(range(task["to"] + 1))

    if __name__ == "__main__":
        serve(handle)

说明：
- 通道 fd 由父进程经 `pass_fds` 继承，fd 号在环境变量 `WORKER_OFFLOAD_CHANNEL_FD` 中；
- worker 侧使用阻塞 socket（worker 通常就是一个普通同步程序）；
- `send()` 线程安全（handler 可在后台线程中发送进度消息）。
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections import deque
from typing import Any, Callable, Deque, Mapping, Optional

from worker_offload.core.codec import DEFAULT_MAX_FRAME_BYTES, FrameBuffer, decode, encode
from worker_offload.core.contracts import CHANNEL_FD_ENV, MESSAGE_START, ChannelMessage
from worker_offload.core.errors import ChannelClosedError, MalformedMessageError

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Any, "ParentChannel"], Any]


class ParentChannel:
    """到父进程的结构化消息通道（阻塞 I/O）。"""

    def __init__(self, sock: socket.socket, *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        self._sock = sock
        self._sock.setblocking(True)
        self._frames = FrameBuffer(max_frame_bytes=max_frame_bytes)
        self._pending: Deque[bytes] = deque()
        self._send_lock = threading.Lock()
        self._eof = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ParentChannel":
        """
        从环境变量接通父进程通道。

        异常：
        - ChannelClosedError：当前进程不是以 ipc 模式启动的 worker
        """

        env = os.environ if environ is None else environ
        raw = str(env.get(CHANNEL_FD_ENV) or "").strip()
        if not raw:
            raise ChannelClosedError(f"no parent channel ({CHANNEL_FD_ENV} is not set)")
        try:
            sock = socket.socket(fileno=int(raw))
        except (ValueError, OSError) as exc:
            raise ChannelClosedError(f"invalid parent channel fd {raw!r}: {exc}") from exc
        return cls(sock)

    def send(self, message: ChannelMessage) -> None:
        """发送一条消息（阻塞直到写入内核）。"""

        data = encode(message)
        with self._send_lock:
            try:
                self._sock.sendall(data)
            except OSError as exc:
                raise ChannelClosedError(f"send to parent failed: {exc}") from exc

    def send_message(self, type: str, payload: Any = None, *, session_id: Optional[str] = None) -> None:
        """发送应用自定义消息（例如进度）。"""

        self.send(ChannelMessage(type=type, session_id=session_id, payload=payload))

    def send_result(self, value: Any, *, session_id: Optional[str] = None) -> None:
        """发送 `result`。"""

        self.send(ChannelMessage.result(value, session_id=session_id))

    def recv(self) -> Optional[ChannelMessage]:
        """
        接收下一条消息；父进程关闭发送方向（EOF）时返回 None。

        说明：
        - 畸形帧记录日志后跳过。
        """

        while True:
            while self._pending:
                frame = self._pending.popleft()
                try:
                    msg = decode(frame)
                except MalformedMessageError as exc:
                    logger.warning("Dropping malformed message from parent: %s", exc)
                    continue
                if msg:
                    return msg
            if self._eof:
                return None
            try:
                data = self._sock.recv(64 * 1024)
            except ConnectionError:
                data = b""
            if not data:
                self._eof = True
                continue
            self._pending.extend(self._frames.feed(data))

    def close(self) -> None:
        """关闭通道（父进程读到 EOF）。"""

        try:
            self._sock.close()
        except OSError:
            pass

    def __enter__(self) -> "ParentChannel":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()


def serve(
    handler: TaskHandler,
    *,
    channel: Optional[ParentChannel] = None,
    on_message: Optional[Callable[[ChannelMessage, ParentChannel], Any]] = None,
) -> int:
    """
    worker 主循环：每收到一条 `start`，调用 `handler(task, channel)` 并回送恰好一条 `result`。

    规则：
    - handler 抛异常时回送一条 `error`（kind=异常类名），不回送 result；
    - 其它类型的消息交给 `on_message`（未提供则忽略）；
    - 父进程关闭通道（EOF）后返回已处理的 task 数。
    """

    ch = channel or ParentChannel.from_env()
    handled = 0
    try:
        while True:
            msg = ch.recv()
            if msg is None:
                break
            if msg.type != MESSAGE_START:
                if on_message is not None:
                    on_message(msg, ch)
                else:
                    logger.debug("Ignoring %r message from parent", msg.type)
                continue
            try:
                value = handler(msg.payload, ch)
            except Exception as exc:
                logger.debug("Task handler failed", exc_info=True)
                ch.send(ChannelMessage.error(kind=type(exc).__name__, message=str(exc), session_id=msg.session_id))
                continue
            ch.send(ChannelMessage.result(value, session_id=msg.session_id))
            handled += 1
    finally:
        if channel is None:
            ch.close()
    return handled
