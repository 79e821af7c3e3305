"""
核心契约（Core Contracts）。

包含：
- `SpawnOptions`：子进程创建参数（cwd/env/shell/stdio/detached/ipc）
- `ExitStatus` / `HandleState`：进程生命周期状态
- `ChannelMessage`：父子进程之间交换的结构化消息（JSON value tree）
"""

from __future__ import annotations

import signal as _signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# 子进程通过该环境变量拿到通道 fd（由父进程经 pass_fds 继承）。
CHANNEL_FD_ENV = "WORKER_OFFLOAD_CHANNEL_FD"

MESSAGE_START = "start"
MESSAGE_RESULT = "result"
MESSAGE_ERROR = "error"


class StdioMode(str, Enum):
    """子进程 stdio 模式。"""

    PIPED = "piped"
    INHERIT = "inherit"
    IGNORE = "ignore"


class HandleState(str, Enum):
    """ProcessHandle 生命周期状态。"""

    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"


class SpawnOptions(BaseModel):
    """
    子进程创建参数。

    字段语义：
    - cwd：工作目录（None 表示继承当前进程 cwd）
    - env：子进程可见的环境变量；None 继承 `os.environ`，`{}` 表示隔离环境
    - shell：是否交给 `/bin/sh -c` 解释（支持管道/重定向；参数若来自不可信输入存在命令注入风险）
    - stdio：stdout/stderr/stdin 的处理方式（piped 时 handle 会持续读取，避免管道写满阻塞子进程）
    - detached：子进程成为新 session leader，生命周期与父进程解耦
    - ipc：是否建立结构化消息通道（socketpair）
    """

    model_config = ConfigDict(extra="forbid")

    cwd: Optional[Path] = None
    env: Optional[Dict[str, str]] = None
    shell: bool = False
    stdio: StdioMode = StdioMode.PIPED
    detached: bool = False
    ipc: bool = True


@dataclass(frozen=True)
class ExitStatus:
    """
    进程终止状态。

    说明：
    - 正常退出：`code` 有值、`signal` 为 None；
    - 被信号杀死：`code` 为 None、`signal` 为信号名（例如 `SIGTERM`）。
    """

    code: Optional[int]
    signal: Optional[str]

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        """把 asyncio/subprocess 的 returncode（负数表示信号）转换为 ExitStatus。"""

        if returncode >= 0:
            return cls(code=int(returncode), signal=None)
        try:
            name = _signal.Signals(-returncode).name
        except ValueError:
            name = f"SIG{-returncode}"
        return cls(code=None, signal=name)


class ChannelMessage(BaseModel):
    """
    通道消息（一行 JSON）。

    字段：
    - type：消息类型；标准类型为 `start`/`result`/`error`，其余为应用自定义消息
    - session_id：父进程在 `start` 中写入，worker 在回包中回显（用于关联校验）
    - payload：任意 JSON 值（task 参数、计算结果或应用数据）
    """

    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=1)
    session_id: Optional[str] = None
    payload: Any = None

    @classmethod
    def start(cls, task: Any = None, *, session_id: Optional[str] = None) -> "ChannelMessage":
        """构造 `start` 消息。"""

        return cls(type=MESSAGE_START, session_id=session_id, payload=task)

    @classmethod
    def result(cls, value: Any, *, session_id: Optional[str] = None) -> "ChannelMessage":
        """构造 `result` 消息。"""

        return cls(type=MESSAGE_RESULT, session_id=session_id, payload=value)

    @classmethod
    def error(cls, *, kind: str, message: str, session_id: Optional[str] = None) -> "ChannelMessage":
        """构造 `error` 消息（worker 侧 handler 失败）。"""

        return cls(type=MESSAGE_ERROR, session_id=session_id, payload={"kind": kind, "message": message})
