"""
通道编解码（JSONL framing）。

约定：
- 每条消息编码为一行紧凑 JSON（UTF-8），以 `\\n` 结尾；
- JSON 字符串中的换行一定被转义，因此按 `\\n` 切分即可无歧义地恢复消息边界；
- 解码失败抛 `MalformedMessageError`，由上层丢弃该条消息并继续读取。
"""

from __future__ import annotations

import json
import logging
from typing import Final, Union

from pydantic import ValidationError

from worker_offload.core.contracts import ChannelMessage
from worker_offload.core.errors import MalformedMessageError

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024


class _Incomplete:
    """帧尚未结束（缺少结尾换行）的哨兵对象。"""

    _instance: "_Incomplete | None" = None

    def __new__(cls) -> "_Incomplete":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "INCOMPLETE"

    def __bool__(self) -> bool:
        return False


INCOMPLETE: Final = _Incomplete()


def encode(message: ChannelMessage) -> bytes:
    """
    把消息编码为一帧（含结尾换行）。

    异常：
    - ValueError：payload 不能表示为标准 JSON（例如 NaN、不可序列化对象）
    """

    obj = message.model_dump(mode="json")
    try:
        line = json.dumps(obj, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"message payload is not JSON-representable: {exc}") from exc
    return line.encode("utf-8") + b"\n"


def decode(frame: bytes) -> Union[ChannelMessage, _Incomplete]:
    """
    解码一帧。

    返回：
    - ChannelMessage：完整且合法的帧
    - INCOMPLETE：帧缺少结尾换行（调用方应继续读取）

    异常：
    - MalformedMessageError：非 UTF-8 / 非 JSON / 根节点不是 object / 字段不合法
    """

    if not frame.endswith(b"\n"):
        return INCOMPLETE
    try:
        text = frame[:-1].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedMessageError(f"frame is not valid utf-8: {exc}", frame=frame) from None
    if not text.strip():
        raise MalformedMessageError("empty frame", frame=frame)
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedMessageError(f"frame is not valid json: {exc}", frame=frame) from None
    if not isinstance(obj, dict):
        raise MalformedMessageError("frame root must be a json object", frame=frame)
    try:
        return ChannelMessage.model_validate(obj)
    except ValidationError as exc:
        raise MalformedMessageError(f"invalid message shape: {exc.error_count()} error(s)", frame=frame) from None


class FrameBuffer:
    """
    字节流 → 帧 的重组缓冲。

    说明：
    - `feed()` 返回本次新凑齐的完整帧（每帧含结尾换行），顺序与到达顺序一致；
    - 单帧超过 `max_frame_bytes` 仍未结束时，丢弃该帧直到下一个换行（计入 `dropped_frames`），
      避免失控的 worker 把父进程内存撑爆。
    """

    def __init__(self, *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        if max_frame_bytes < 1:
            raise ValueError("max_frame_bytes must be >= 1")
        self._max = int(max_frame_bytes)
        self._buf = bytearray()
        self._discarding = False
        self.dropped_frames = 0

    def feed(self, data: bytes) -> list[bytes]:
        """追加字节并取出所有完整帧。"""

        frames: list[bytes] = []
        if not data:
            return frames
        self._buf.extend(data)
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            frame = bytes(self._buf[: idx + 1])
            del self._buf[: idx + 1]
            if self._discarding:
                # 超长帧的尾部：丢弃到换行为止
                self._discarding = False
                continue
            if len(frame) - 1 > self._max:
                self.dropped_frames += 1
                logger.warning("Dropping oversized channel frame (%d bytes > %d)", len(frame) - 1, self._max)
                continue
            frames.append(frame)
        if len(self._buf) > self._max:
            if not self._discarding:
                self.dropped_frames += 1
                logger.warning("Dropping oversized channel frame (> %d bytes without newline)", self._max)
            self._discarding = True
            self._buf.clear()
        return frames

    def pending_bytes(self) -> int:
        """当前尚未凑成完整帧的字节数。"""

        return len(self._buf)
