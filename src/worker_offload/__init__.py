"""
Worker Offload SDK（Python）。

说明：
- 把耗时任务从单线程（asyncio）请求处理进程中移到 worker 子进程执行；
- 父子进程之间通过结构化消息通道（socketpair + JSONL）交换 `start`/`result`；
- 对外入口为 `Dispatcher.submit()`：返回在结果到达（或 worker 异常退出）时完成的 Future。
- 当前已包含：
  - ProcessHandle（spawn/send/on_message/on_exit/detach/terminate）
  - ChannelCodec（JSONL framing）
  - WorkerSession / WorkerRegistry / Dispatcher
  - 缓冲式执行（run_buffered）
  - 配置加载器（YAML overlay + pydantic 校验）
  - worker 侧通道（serve）
"""

from __future__ import annotations

from worker_offload.config.loader import WorkerOffloadConfig, load_config, load_default_config
from worker_offload.core.contracts import ChannelMessage, ExitStatus, HandleState, SpawnOptions, StdioMode
from worker_offload.core.dispatcher import Dispatcher
from worker_offload.core.errors import (
    ChannelClosedError,
    FrameworkError,
    MalformedMessageError,
    SpawnError,
    WorkerDiedError,
    WorkerOffloadError,
    WorkerTaskError,
)
from worker_offload.core.exec import CompletedRun, run_buffered
from worker_offload.core.process_handle import ProcessHandle, spawn
from worker_offload.core.registry import WorkerRegistry
from worker_offload.core.session import WorkerSession

__all__ = [
    "ChannelClosedError",
    "ChannelMessage",
    "CompletedRun",
    "Dispatcher",
    "ExitStatus",
    "FrameworkError",
    "HandleState",
    "MalformedMessageError",
    "ProcessHandle",
    "SpawnError",
    "SpawnOptions",
    "StdioMode",
    "WorkerDiedError",
    "WorkerOffloadConfig",
    "WorkerOffloadError",
    "WorkerRegistry",
    "WorkerSession",
    "WorkerTaskError",
    "__version__",
    "load_config",
    "load_default_config",
    "run_buffered",
    "spawn",
]

__version__ = "0.1.0"
