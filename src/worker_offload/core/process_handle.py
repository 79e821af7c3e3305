"""
ProcessHandle：一个子进程的父进程侧句柄（asyncio）。

职责：
- 创建子进程（argv 或 shell 模式），可选建立结构化消息通道（socketpair + JSONL）；
- 单读者任务按到达顺序分发入站消息（`on_message`）；
- 退出事件恰好触发一次（`on_exit`），且在通道读尽之后触发（最后一条 result 不会被 exit 抢先）；
- piped 模式下持续读取 stdout/stderr（有界尾部缓冲），避免 OS 管道写满导致子进程阻塞。

说明：
- 本实现面向 macOS/Linux（不考虑 Windows）。
- 所有方法都应在创建该 handle 的事件循环线程内调用。
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import socket
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from worker_offload.core.codec import DEFAULT_MAX_FRAME_BYTES, FrameBuffer, decode, encode
from worker_offload.core.contracts import (
    CHANNEL_FD_ENV,
    ChannelMessage,
    ExitStatus,
    HandleState,
    SpawnOptions,
    StdioMode,
)
from worker_offload.core.errors import ChannelClosedError, MalformedMessageError, SpawnError

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024

MessageListener = Callable[[ChannelMessage], Any]
ExitListener = Callable[[ExitStatus], Any]
ChunkListener = Callable[[bytes], Any]


class TailRingBuffer:
    """
    piped stdout/stderr 的尾部缓冲。

    说明：
    - worker 可能持续输出大量日志；handle 必须一直读管道（否则子进程写满管道后阻塞），
      但只保留最后 `max_bytes` 字节，`truncated` 标记是否丢弃过头部；
    - `max_bytes=0` 时只排空管道、不保留内容。
    """

    def __init__(self, max_bytes: int) -> None:
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self.max_bytes = max_bytes
        self._buf = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        self._buf += chunk
        excess = len(self._buf) - self.max_bytes
        if excess > 0:
            del self._buf[:excess]
            self.truncated = True

    def get_bytes(self) -> bytes:
        return bytes(self._buf)


def _stdio_target(mode: StdioMode) -> Optional[int]:
    """把 StdioMode 映射为 subprocess 的 stdin/stdout/stderr 参数。"""

    if mode is StdioMode.PIPED:
        return subprocess.PIPE
    if mode is StdioMode.IGNORE:
        return subprocess.DEVNULL
    return None


def _shell_command_line(command: str, args: Sequence[str]) -> str:
    """shell 模式：command 原样保留（允许管道/重定向语法），args 逐个 quote 后追加。"""

    parts = [str(command)]
    parts.extend(shlex.quote(str(a)) for a in args)
    return " ".join(parts)


class ProcessHandle:
    """
    子进程句柄。

    不变量：
    - 每个 handle 只有一个通道写入方（本对象）和一个读取任务；
    - exit listeners 对每个注册者恰好调用一次。
    """

    def __init__(
        self,
        *,
        proc: asyncio.subprocess.Process,
        command: str,
        args: Sequence[str],
        options: SpawnOptions,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        stdio_tail_bytes: int = 64 * 1024,
        exit_drain_timeout_ms: int = 1000,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._proc = proc
        self.command = str(command)
        self.args = [str(a) for a in args]
        self.options = options
        self.created_at_ms = int(time.time() * 1000)

        self._max_frame_bytes = int(max_frame_bytes)
        self._exit_drain_timeout = max(0, int(exit_drain_timeout_ms)) / 1000.0
        self._stdout_tail = TailRingBuffer(int(stdio_tail_bytes))
        self._stderr_tail = TailRingBuffer(int(stdio_tail_bytes))

        self._state = HandleState.SPAWNING
        self._exit_status: Optional[ExitStatus] = None
        self._failure: Optional[BaseException] = None
        self._exited: asyncio.Future[ExitStatus] = self._loop.create_future()

        self._writer: Optional[asyncio.StreamWriter] = None
        self._send_closed = not options.ipc
        self._message_listeners: list[MessageListener] = []
        self._backlog: list[ChannelMessage] = []
        self._exit_listeners: list[ExitListener] = []
        self._stdout_listeners: list[ChunkListener] = []
        self._stderr_listeners: list[ChunkListener] = []

        self._reader_task: Optional[asyncio.Task[None]] = None
        self._stdout_task: Optional[asyncio.Task[None]] = None
        self._stderr_task: Optional[asyncio.Task[None]] = None
        self._monitor_task: Optional[asyncio.Task[None]] = None

        self._unref = False
        self.malformed_frames = 0

    # ---- spawn ----

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        options: Optional[SpawnOptions] = None,
        *,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        stdio_tail_bytes: int = 64 * 1024,
        exit_drain_timeout_ms: int = 1000,
    ) -> "ProcessHandle":
        """
        启动子进程并返回句柄。

        参数：
        - command：可执行文件（argv 模式）或 shell 命令文本（shell 模式）
        - args：参数列表（shell 模式下会被 quote 后追加到命令末尾）
        - options：SpawnOptions（cwd/env/shell/stdio/detached/ipc）

        异常：
        - ValueError：command 为空
        - SpawnError：可执行文件不存在、cwd 非法或 OS 拒绝创建进程
        """

        opts = options or SpawnOptions()
        if not str(command or "").strip():
            raise ValueError("command must not be empty")
        argv = [str(a) for a in args]

        cwd: Optional[str] = None
        if opts.cwd is not None:
            cwd_path = Path(opts.cwd)
            if not cwd_path.exists() or not cwd_path.is_dir():
                raise SpawnError(f"cwd is not an existing directory: {cwd_path}", command=command)
            cwd = str(cwd_path)

        env = dict(os.environ) if opts.env is None else {str(k): str(v) for k, v in opts.env.items()}

        parent_sock: Optional[socket.socket] = None
        child_sock: Optional[socket.socket] = None
        pass_fds: tuple[int, ...] = ()
        if opts.ipc:
            parent_sock, child_sock = socket.socketpair()
            env[CHANNEL_FD_ENV] = str(child_sock.fileno())
            pass_fds = (child_sock.fileno(),)

        stdio = _stdio_target(opts.stdio)
        kwargs: dict[str, Any] = {
            "cwd": cwd,
            "env": env,
            "stdin": stdio,
            "stdout": stdio,
            "stderr": stdio,
            "pass_fds": pass_fds,
            "start_new_session": bool(opts.detached),
        }

        try:
            if opts.shell:
                proc = await asyncio.create_subprocess_shell(_shell_command_line(command, argv), **kwargs)
            else:
                proc = await asyncio.create_subprocess_exec(command, *argv, **kwargs)
        except OSError as exc:
            if parent_sock is not None:
                parent_sock.close()
            raise SpawnError(
                f"failed to spawn {command!r}: {exc}",
                command=command,
                details={"errno": exc.errno, "strerror": exc.strerror},
            ) from exc
        finally:
            # 子进程已继承 child 端；父进程必须关闭自己的副本，否则子进程退出后读不到 EOF。
            if child_sock is not None:
                child_sock.close()

        handle = cls(
            proc=proc,
            command=command,
            args=argv,
            options=opts,
            max_frame_bytes=max_frame_bytes,
            stdio_tail_bytes=stdio_tail_bytes,
            exit_drain_timeout_ms=exit_drain_timeout_ms,
        )
        await handle._start(parent_sock)
        logger.debug(
            "Spawned pid=%s command=%r shell=%s detached=%s ipc=%s",
            handle.pid,
            command,
            opts.shell,
            opts.detached,
            opts.ipc,
        )
        return handle

    async def _start(self, parent_sock: Optional[socket.socket]) -> None:
        """接通通道并启动 reader/drain/monitor 任务。"""

        if parent_sock is not None:
            try:
                reader, writer = await asyncio.open_connection(sock=parent_sock)
            except OSError:
                parent_sock.close()
                self._send_closed = True
                logger.warning("Failed to attach channel for pid=%s", self.pid, exc_info=True)
            else:
                self._writer = writer
                self._reader_task = self._loop.create_task(self._read_channel(reader))
        if self._proc.stdout is not None:
            self._stdout_task = self._loop.create_task(
                self._drain_stream(self._proc.stdout, self._stdout_tail, self._stdout_listeners)
            )
        if self._proc.stderr is not None:
            self._stderr_task = self._loop.create_task(
                self._drain_stream(self._proc.stderr, self._stderr_tail, self._stderr_listeners)
            )
        self._state = HandleState.RUNNING
        self._monitor_task = self._loop.create_task(self._monitor())

    # ---- properties ----

    @property
    def pid(self) -> int:
        """子进程 pid。"""

        return int(self._proc.pid)

    @property
    def state(self) -> HandleState:
        """当前生命周期状态。"""

        return self._state

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        """退出状态（未退出时为 None）。"""

        return self._exit_status

    @property
    def has_exited(self) -> bool:
        """OS 进程是否已退出（可能早于 exit 事件：退出事件要等通道/stdio 读尽）。"""

        return self._exit_status is not None or self._proc.returncode is not None

    @property
    def failure(self) -> Optional[BaseException]:
        """FAILED 状态下的底层异常。"""

        return self._failure

    @property
    def channel_open(self) -> bool:
        """通道是否仍可发送。"""

        return self._writer is not None and not self._send_closed and not self._writer.is_closing()

    @property
    def is_detached(self) -> bool:
        """是否已调用 `detach()`（不再计入 join 屏障）。"""

        return self._unref

    # ---- listeners ----

    def on_message(self, callback: MessageListener) -> None:
        """
        注册入站消息监听器（按接收顺序、每条消息调用一次）。

        说明：
        - 第一个监听器注册前到达的消息会被暂存，并在注册时按顺序补发。
        """

        self._message_listeners.append(callback)
        if self._backlog:
            pending, self._backlog = self._backlog, []
            for msg in pending:
                self._invoke(callback, msg)

    def on_exit(self, callback: ExitListener) -> None:
        """注册退出监听器；若进程已退出，则在下一轮事件循环中立即回调。"""

        if self._exit_status is not None:
            self._loop.call_soon(self._invoke, callback, self._exit_status)
            return
        self._exit_listeners.append(callback)

    def on_stdout(self, callback: ChunkListener) -> None:
        """注册 stdout 数据块监听器（仅 piped 模式）。"""

        self._stdout_listeners.append(callback)

    def on_stderr(self, callback: ChunkListener) -> None:
        """注册 stderr 数据块监听器（仅 piped 模式）。"""

        self._stderr_listeners.append(callback)

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        """调用监听器；监听器异常只记录日志，不影响读取任务。"""

        try:
            callback(*args)
        except Exception:
            logger.warning("Listener %r raised for pid=%s", callback, self.pid, exc_info=True)

    # ---- channel ----

    def send(self, message: ChannelMessage) -> None:
        """
        把一条消息放入通道发送缓冲（非阻塞；顺序与调用顺序一致）。

        异常：
        - ChannelClosedError：未建立通道、已 disconnect 或子进程已退出
        - ValueError：payload 无法表示为 JSON
        """

        if self._writer is None:
            raise ChannelClosedError(
                "process has no message channel",
                details={"pid": self.pid, "ipc": self.options.ipc},
            )
        if self._send_closed or self._writer.is_closing() or self.has_exited:
            raise ChannelClosedError(details={"pid": self.pid, "state": self._state.value})
        self._writer.write(encode(message))

    async def drain(self) -> None:
        """等待发送缓冲写入内核（背压点）。"""

        if self._writer is None or self._writer.is_closing():
            return
        try:
            await self._writer.drain()
        except ConnectionError as exc:
            self._send_closed = True
            raise ChannelClosedError(f"channel write failed: {exc}", details={"pid": self.pid}) from exc

    def disconnect(self) -> None:
        """
        关闭发送方向（half-close）。

        说明：
        - 子进程读到 EOF 后即可自行退出；
        - 子进程在此之后发出的消息仍会被读取，直到它关闭通道或退出。
        """

        if self._writer is None or self._send_closed:
            self._send_closed = True
            return
        self._send_closed = True
        try:
            if self._writer.can_write_eof():
                self._writer.write_eof()
            else:
                self._writer.close()
        except OSError:
            logger.debug("Channel half-close failed for pid=%s", self.pid, exc_info=True)

    async def _read_channel(self, reader: asyncio.StreamReader) -> None:
        """单读者任务：字节流 → 帧 → 消息，按顺序分发。"""

        frames = FrameBuffer(max_frame_bytes=self._max_frame_bytes)
        try:
            while True:
                data = await reader.read(_READ_CHUNK)
                if not data:
                    break
                for frame in frames.feed(data):
                    try:
                        msg = decode(frame)
                    except MalformedMessageError as exc:
                        self.malformed_frames += 1
                        logger.warning("Dropping malformed message from pid=%s: %s", self.pid, exc)
                        continue
                    self._dispatch_message(msg)
        except ConnectionError:
            logger.debug("Channel reset by pid=%s", self.pid, exc_info=True)
        finally:
            self.malformed_frames += frames.dropped_frames
            if frames.pending_bytes():
                logger.warning(
                    "Channel of pid=%s closed with %d bytes of an incomplete frame",
                    self.pid,
                    frames.pending_bytes(),
                )

    def _dispatch_message(self, msg: ChannelMessage) -> None:
        """把消息交给所有监听器（无监听器时暂存）。"""

        if not self._message_listeners:
            self._backlog.append(msg)
            return
        for cb in list(self._message_listeners):
            self._invoke(cb, msg)

    # ---- stdio ----

    async def _drain_stream(
        self,
        stream: asyncio.StreamReader,
        tail: TailRingBuffer,
        listeners: list[ChunkListener],
    ) -> None:
        """持续读取 stdout/stderr 写入尾部缓冲，并通知监听器。"""

        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            tail.append(chunk)
            for cb in list(listeners):
                self._invoke(cb, chunk)

    def stdout_tail(self) -> str:
        """stdout 尾部文本（UTF-8，非法字节替换）。"""

        return self._stdout_tail.get_bytes().decode("utf-8", errors="replace")

    def stderr_tail(self) -> str:
        """stderr 尾部文本（UTF-8，非法字节替换）。"""

        return self._stderr_tail.get_bytes().decode("utf-8", errors="replace")

    @property
    def output_truncated(self) -> bool:
        """stdout/stderr 任一发生尾部截断。"""

        return self._stdout_tail.truncated or self._stderr_tail.truncated

    def write_stdin(self, data: bytes | str) -> None:
        """向子进程 stdin 写入（仅 piped 模式）。"""

        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            raise ChannelClosedError("stdin is not available", details={"pid": self.pid})
        stdin.write(data.encode("utf-8") if isinstance(data, str) else data)

    def close_stdin(self) -> None:
        """关闭子进程 stdin（子进程读到 EOF）。"""

        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    def pipe_stdout(self, target: "ProcessHandle") -> None:
        """
        把本进程 stdout 转发到 target 的 stdin（例如 `find . -type f | wc -l`）。

        说明：
        - 两端都必须是 piped 模式；
        - 本进程退出（stdout 已读尽）后关闭 target 的 stdin。
        """

        if self.options.stdio is not StdioMode.PIPED or target.options.stdio is not StdioMode.PIPED:
            raise ValueError("pipe_stdout requires both handles to use stdio=piped")
        self.on_stdout(target.write_stdin)
        self.on_exit(lambda _status: target.close_stdin())

    # ---- lifecycle ----

    def detach(self) -> None:
        """
        不再把该进程计入 join 屏障（仅对 `detached=True` 启动的进程有效）。

        说明：
        - OS 进程本身不受影响，继续运行。
        """

        if not self.options.detached:
            raise ValueError("detach() requires the process to be spawned with detached=True")
        self._unref = True

    def terminate(self, sig: int = signal.SIGTERM) -> None:
        """
        请求终止子进程（异步；完成由 exit listener 观察）。

        说明：
        - detached 进程是新的进程组 leader，按进程组发送信号，避免子孙进程残留；
        - 已退出时为 no-op。
        """

        if self.has_exited:
            return
        try:
            if self.options.detached:
                os.killpg(self.pid, sig)
            else:
                self._proc.send_signal(sig)
        except ProcessLookupError:
            logger.debug("terminate: pid=%s already gone", self.pid)

    async def wait(self) -> ExitStatus:
        """等待进程退出（取消调用方不会影响 handle 自身状态）。"""

        return await asyncio.shield(self._exited)

    async def _monitor(self) -> None:
        """等待进程退出 → 读尽通道与 stdio → 触发 exit listeners。"""

        try:
            returncode = await self._proc.wait()
            status = ExitStatus.from_returncode(returncode)
        except Exception as exc:
            logger.error("Failed to observe exit of pid=%s", self.pid, exc_info=True)
            self._failure = exc
            status = ExitStatus(code=None, signal=None)

        pending = [t for t in (self._reader_task, self._stdout_task, self._stderr_task) if t is not None]
        if pending:
            _done, still = await asyncio.wait(pending, timeout=self._exit_drain_timeout)
            if still:
                # 常见原因：子孙进程继承了通道/管道并仍在运行
                logger.warning("pid=%s exited but %d stream(s) stayed open; abandoning them", self.pid, len(still))
                for t in still:
                    t.cancel()

        self._send_closed = True
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()

        self._exit_status = status
        self._state = HandleState.FAILED if self._failure is not None else HandleState.EXITED
        logger.debug("pid=%s exited code=%s signal=%s", self.pid, status.code, status.signal)

        listeners, self._exit_listeners = self._exit_listeners, []
        for cb in listeners:
            self._invoke(cb, status)
        if self._backlog:
            logger.warning("pid=%s exited with %d undelivered message(s)", self.pid, len(self._backlog))
        self._exited.set_result(status)


async def spawn(
    command: str,
    args: Sequence[str] = (),
    options: Optional[SpawnOptions] = None,
    **kwargs: Any,
) -> ProcessHandle:
    """`ProcessHandle.spawn` 的模块级别名。"""

    return await ProcessHandle.spawn(command, args, options, **kwargs)
