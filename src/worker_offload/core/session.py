"""
WorkerSession：一次派发（task → worker → result）的父进程侧簿记对象。

生命周期：
1) `create()`：分配 session_id → spawn ProcessHandle → 注册到 registry（不等待 worker）
2) `dispatch(task)`：发送 `start`
3) `await_result()`：挂起直到 result / error / 进程提前退出（三者恰好其一被接受）
4) 回收：结果确定后 half-close 通道；worker 未在宽限期内退出则 terminate；
   观察到退出事件后才从 registry 移除（避免陈旧进程的迟到消息落到已释放的条目上）
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
import uuid
from typing import Any, Callable, Optional, Sequence

from worker_offload.config.loader import WorkerOffloadConfig
from worker_offload.core.contracts import (
    MESSAGE_ERROR,
    MESSAGE_RESULT,
    ChannelMessage,
    ExitStatus,
    SpawnOptions,
)
from worker_offload.core.errors import WorkerDiedError, WorkerTaskError
from worker_offload.core.process_handle import ProcessHandle
from worker_offload.core.registry import WorkerRegistry

logger = logging.getLogger(__name__)


def _consume_outcome(fut: "asyncio.Future[Any]") -> None:
    """标记 future 的异常已被读取（无人等待的 session 不产生 never-retrieved 告警）。"""

    if not fut.cancelled():
        fut.exception()


class WorkerSession:
    """
    单个 worker 会话。

    字段：
    - session_id：uuid hex，每次派发唯一
    - handle：独占持有的 ProcessHandle
    - created_at_ms：创建时间（ms）
    - messages_received / duplicate_results：会话级计数器
    """

    def __init__(
        self,
        *,
        session_id: str,
        handle: ProcessHandle,
        registry: WorkerRegistry,
        config: WorkerOffloadConfig,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self.session_id = str(session_id)
        self.handle = handle
        self.created_at_ms = int(time.time() * 1000)
        self._registry = registry
        self._config = config

        self._outcome: asyncio.Future[Any] = self._loop.create_future()
        self._closed: asyncio.Future[None] = self._loop.create_future()
        self._reclaim_task: Optional[asyncio.Task[None]] = None
        self._message_listeners: list[Callable[[ChannelMessage], Any]] = []

        self.messages_received = 0
        self.duplicate_results = 0

    @classmethod
    async def create(
        cls,
        command: str,
        args: Sequence[str] = (),
        options: Optional[SpawnOptions] = None,
        *,
        registry: WorkerRegistry,
        config: Optional[WorkerOffloadConfig] = None,
    ) -> "WorkerSession":
        """
        创建 session：spawn 子进程并注册（立即返回，不等待 worker）。

        异常：
        - SpawnError：子进程创建失败（此时不会留下 registry 条目）
        """

        cfg = config or WorkerOffloadConfig()
        handle = await ProcessHandle.spawn(
            command,
            args,
            options,
            max_frame_bytes=cfg.channel.max_frame_bytes,
            stdio_tail_bytes=cfg.stdio.tail_bytes,
            exit_drain_timeout_ms=cfg.lifecycle.exit_drain_timeout_ms,
        )
        session = cls(session_id=uuid.uuid4().hex, handle=handle, registry=registry, config=cfg)
        # spawn 与注册之间没有 await：读取任务开始前条目已存在。
        registry.register(session)
        handle.on_message(session._on_channel_message)
        handle.on_exit(session._on_exit)
        logger.debug("Session %s created for pid=%s", session.session_id, handle.pid)
        return session

    # ---- caller side ----

    def dispatch(self, task: Any = None) -> None:
        """
        发送 `start`（携带 task 参数）。

        异常：
        - ChannelClosedError：通道已关闭或进程已退出
        """

        self.handle.send(ChannelMessage.start(task, session_id=self.session_id))

    async def await_result(self) -> Any:
        """
        等待结果（挂起点；不阻塞事件循环线程）。

        返回：
        - worker `result` 消息的 payload

        异常：
        - WorkerDiedError：进程在交付结果前退出
        - WorkerTaskError：worker 回报 `error`
        """

        return await asyncio.shield(self._outcome)

    def send(self, type: str, payload: Any = None) -> None:
        """向 worker 发送应用自定义消息。"""

        self.handle.send(ChannelMessage(type=type, session_id=self.session_id, payload=payload))

    def on_message(self, callback: Callable[[ChannelMessage], Any]) -> None:
        """注册应用消息监听器（`start`/`result`/`error` 以外的消息）。"""

        self._message_listeners.append(callback)

    def cancel(self, sig: int = signal.SIGTERM) -> None:
        """
        请求终止 worker。

        说明：
        - 资源不会同步释放；退出事件到达后 session 才结束并从 registry 移除；
        - 若此时尚无结果，outcome 为带信号名的 WorkerDiedError。
        """

        logger.debug("Session %s cancel requested (signal=%s)", self.session_id, sig)
        self.handle.terminate(sig)

    @property
    def done(self) -> bool:
        """outcome 是否已确定。"""

        return self._outcome.done()

    @property
    def is_closed(self) -> bool:
        """session 是否已结束（进程已回收、registry 条目已移除）。"""

        return self._closed.done()

    async def closed(self) -> None:
        """等待 session 结束。"""

        await asyncio.shield(self._closed)

    # ---- message / exit paths ----

    def _on_channel_message(self, message: ChannelMessage) -> None:
        """handle 读取任务 → registry 关联 → deliver。"""

        self._registry.route(self.session_id, message)

    def deliver(self, message: ChannelMessage) -> None:
        """
        处理一条已关联到本 session 的入站消息。

        规则：
        - envelope 中的 session_id 若指向其它 session：丢弃并记录（不允许串线）；
        - 第一个 `result`/`error` 确定 outcome；之后的 `result` 按 duplicate_result_policy 处理；
        - 其余类型转交应用监听器。
        """

        self.messages_received += 1
        if message.session_id is not None and message.session_id != self.session_id:
            logger.warning(
                "Session %s dropping %r message addressed to session %s",
                self.session_id,
                message.type,
                message.session_id,
            )
            return

        if message.type == MESSAGE_RESULT:
            if self._outcome.done():
                self._on_duplicate_result()
                return
            self._outcome.set_result(message.payload)
            self._begin_reclaim()
            return

        if message.type == MESSAGE_ERROR:
            if self._outcome.done():
                logger.warning("Session %s ignoring late error message", self.session_id)
                return
            payload = message.payload if isinstance(message.payload, dict) else {}
            self._outcome.set_exception(
                WorkerTaskError(
                    kind=str(payload.get("kind") or "error"),
                    message=str(payload.get("message") or "worker reported an error"),
                    session_id=self.session_id,
                )
            )
            _consume_outcome(self._outcome)
            self._begin_reclaim()
            return

        for cb in list(self._message_listeners):
            try:
                cb(message)
            except Exception:
                logger.warning("Session %s message listener raised", self.session_id, exc_info=True)

    def _on_duplicate_result(self) -> None:
        """重复 result：默认记录告警后丢弃；terminate 策略下视为协议违规并终止 worker。"""

        self.duplicate_results += 1
        if self._config.lifecycle.duplicate_result_policy == "terminate":
            logger.error(
                "Session %s protocol violation: duplicate result from pid=%s; terminating worker",
                self.session_id,
                self.handle.pid,
            )
            self.handle.terminate()
            return
        logger.warning("Session %s ignoring duplicate result from pid=%s", self.session_id, self.handle.pid)

    def _on_exit(self, status: ExitStatus) -> None:
        """进程退出：无结果时以 WorkerDiedError 结束，然后移除 registry 条目。"""

        if not self._outcome.done():
            self._outcome.set_exception(
                WorkerDiedError(code=status.code, signal=status.signal, session_id=self.session_id)
            )
            _consume_outcome(self._outcome)
        if self._reclaim_task is not None and not self._reclaim_task.done():
            self._reclaim_task.cancel()
        self._registry.unregister(self.session_id)
        if not self._closed.done():
            self._closed.set_result(None)
        logger.debug("Session %s closed (code=%s signal=%s)", self.session_id, status.code, status.signal)

    def _begin_reclaim(self) -> None:
        """outcome 已确定：half-close 通道；非 detached 进程超过宽限期仍在运行则 terminate。"""

        self.handle.disconnect()
        if self.handle.options.detached or self._reclaim_task is not None:
            return
        self._reclaim_task = self._loop.create_task(self._reclaim())

    async def _reclaim(self) -> None:
        await asyncio.sleep(self._config.lifecycle.reclaim_grace_ms / 1000.0)
        if self.handle.exit_status is None:
            logger.debug("Session %s reclaim grace elapsed; terminating pid=%s", self.session_id, self.handle.pid)
            self.handle.terminate()
