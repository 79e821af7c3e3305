"""
Worker offload 错误分类（异常类型）。

说明：
- 所有对外异常都继承 `FrameworkError`，携带稳定的英文 `code/message/details`；
- 调用方可以按类型捕获，也可以用 `to_issue()` 转成可序列化对象写入日志/响应；
- 参数校验类错误仍直接使用 `ValueError`（与标准库语义一致）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class WorkerOffloadError(Exception):
    """本包所有异常的根类型（`except WorkerOffloadError` 可兜住 spawn/通道/worker 失败）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """
    一次 offload 失败的可序列化快照。

    用法：HTTP handler 捕获 `submit` 抛出的错误后，把 `to_issue()` 的结果放进响应体或结构化日志，
    不必暴露异常对象本身（例如 `WORKER_DIED` + `{"exit_code": 1, "session_id": ...}`）。
    """

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(WorkerOffloadError):
    """
    带错误码的 offload 错误。

    字段：
    - code：稳定错误码（`SPAWN_FAILED` / `CHANNEL_CLOSED` / `MALFORMED_MESSAGE` / `WORKER_DIED` / `WORKER_TASK_FAILED`）
    - message：英文描述（进入日志）
    - details：pid、session_id、退出码等上下文
    """

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """复制 details，调用方修改快照不会影响异常本身。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class SpawnError(FrameworkError):
    """子进程创建失败（可执行文件不存在、cwd 非法、OS 拒绝创建等）。"""

    def __init__(self, message: str, *, command: str = "", details: Dict[str, Any] | None = None) -> None:
        merged = {"command": str(command)}
        merged.update(details or {})
        super().__init__(code="SPAWN_FAILED", message=message, details=merged)
        self.command = str(command)


class ChannelClosedError(FrameworkError):
    """在通道已关闭（子进程退出/通道被拆除/未建立通道）后发送消息。"""

    def __init__(self, message: str = "channel is closed", *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(code="CHANNEL_CLOSED", message=message, details=details)


class MalformedMessageError(FrameworkError):
    """通道帧无法解码（非 UTF-8 / 非 JSON / 结构不符）；该条消息被丢弃，会话继续。"""

    def __init__(self, message: str, *, frame: bytes = b"", details: Dict[str, Any] | None = None) -> None:
        merged: Dict[str, Any] = {"frame_head": frame[:200].decode("utf-8", errors="replace")}
        merged.update(details or {})
        super().__init__(code="MALFORMED_MESSAGE", message=message, details=merged)


class WorkerDiedError(FrameworkError):
    """
    worker 在交付结果之前退出。

    字段：
    - code：正常退出时的退出码（被信号杀死时为 None）
    - signal：终止信号名（例如 `SIGTERM`；正常退出时为 None）
    """

    def __init__(self, *, code: Optional[int], signal: Optional[str], session_id: str = "") -> None:
        super().__init__(
            code="WORKER_DIED",
            message=f"worker exited before delivering a result (code={code}, signal={signal})",
            details={"exit_code": code, "signal": signal, "session_id": session_id},
        )
        # 注意：`self.code` 在基类中是错误码；这里按 worker 语义单独暴露 exit_code。
        self.exit_code = code
        self.signal = signal
        self.session_id = session_id


class WorkerTaskError(FrameworkError):
    """worker 侧 handler 抛出异常，并通过 `error` 消息回报。"""

    def __init__(self, *, kind: str, message: str, session_id: str = "") -> None:
        super().__init__(
            code="WORKER_TASK_FAILED",
            message=message,
            details={"kind": kind, "session_id": session_id},
        )
        self.kind = kind
        self.session_id = session_id
