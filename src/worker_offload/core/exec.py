"""
缓冲式执行（exec / execFile 语义）。

与 Dispatcher 的区别：
- 不建立结构化通道，只捕获 stdout/stderr（尾部截断）与退出状态；
- 适合输出较小的一次性命令；输出很大或需要流式处理时请直接使用 ProcessHandle 的 piped 模式。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from worker_offload.core.contracts import ExitStatus, SpawnOptions, StdioMode
from worker_offload.core.process_handle import ProcessHandle

logger = logging.getLogger(__name__)


class CompletedRun(BaseModel):
    """
    命令执行结果（结构化）。

    字段说明：
    - ok：exit_code==0 且未超时
    - exit_code / signal：退出码或终止信号名（二者恰好其一有值）
    - stdout/stderr：捕获到的输出（可能被尾部截断）
    - timeout：是否因超时被终止
    - truncated：stdout/stderr 是否发生截断
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timeout: bool = False
    truncated: bool = False


async def _terminate_and_wait(handle: ProcessHandle, grace_ms: int) -> ExitStatus:
    """SIGTERM →（宽限 grace_ms）→ SIGKILL，返回最终退出状态。"""

    handle.terminate(signal.SIGTERM)
    try:
        return await asyncio.wait_for(handle.wait(), timeout=grace_ms / 1000.0)
    except asyncio.TimeoutError:
        handle.terminate(signal.SIGKILL)
        return await handle.wait()


async def run_buffered(
    command: str,
    args: Sequence[str] = (),
    options: Optional[SpawnOptions] = None,
    *,
    timeout_ms: Optional[int] = None,
    max_output_bytes: int = 64 * 1024,
    terminate_grace_ms: int = 200,
    stdin_data: Optional[bytes] = None,
) -> CompletedRun:
    """
    执行命令并缓冲输出。

    参数：
    - command/args/options：同 `ProcessHandle.spawn`（stdio 固定为 piped，ipc 固定关闭）
    - timeout_ms：超时毫秒数；超时后 SIGTERM →（宽限）→ SIGKILL
    - max_output_bytes：stdout/stderr 各自保留的尾部字节数
    - stdin_data：写入 stdin 的数据（写完即关闭 stdin）

    异常：
    - SpawnError：子进程创建失败

    说明：
    - 调用方取消（例如外层 `asyncio.wait_for`）时，子进程按 SIGTERM →（宽限）→ SIGKILL 终止后再传播取消。
    """

    if timeout_ms is not None and timeout_ms < 1:
        raise ValueError("timeout_ms must be >= 1")
    opts = (options or SpawnOptions()).model_copy(update={"stdio": StdioMode.PIPED, "ipc": False})

    start = time.monotonic()
    handle = await ProcessHandle.spawn(command, args, opts, stdio_tail_bytes=max_output_bytes)
    if stdin_data:
        handle.write_stdin(stdin_data)
    handle.close_stdin()

    timed_out = False
    try:
        status = await asyncio.wait_for(
            handle.wait(),
            timeout=None if timeout_ms is None else timeout_ms / 1000.0,
        )
    except asyncio.TimeoutError:
        timed_out = True
        logger.debug("run_buffered: pid=%s timed out after %sms", handle.pid, timeout_ms)
        status = await _terminate_and_wait(handle, terminate_grace_ms)
    except asyncio.CancelledError:
        # 调用方取消（外层 wait_for / task.cancel）：子进程不能变成孤儿
        logger.debug("run_buffered: pid=%s cancelled; terminating", handle.pid)
        await asyncio.shield(_terminate_and_wait(handle, terminate_grace_ms))
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    return CompletedRun(
        ok=(not timed_out) and status.code == 0,
        exit_code=status.code,
        signal=status.signal,
        stdout=handle.stdout_tail(),
        stderr=handle.stderr_tail(),
        duration_ms=duration_ms,
        timeout=timed_out,
        truncated=handle.output_truncated,
    )
