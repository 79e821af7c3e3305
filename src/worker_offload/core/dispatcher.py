"""
Dispatcher：对外唯一入口（submit → Future[result]）。

说明：
- 隐藏 spawn / registry / codec 细节；调用方（例如 HTTP handler）只需 `await dispatcher.run(...)`；
- 不内置超时与重试：需要超时的调用方用 `asyncio.wait_for` 包裹，并在超时后 `session.cancel()`；
- `shutdown()` 批量终止非 detached 的 session；detached session 的进程继续运行并仍可交付结果。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from worker_offload.config.loader import WorkerOffloadConfig
from worker_offload.core.contracts import SpawnOptions
from worker_offload.core.errors import ChannelClosedError
from worker_offload.core.registry import WorkerRegistry
from worker_offload.core.session import WorkerSession

logger = logging.getLogger(__name__)

OptionsLike = Union[SpawnOptions, Mapping[str, Any], None]


def python_worker_env(env: Optional[Dict[str, str]]) -> Dict[str, str]:
    """
    为 Python worker 准备环境变量，确保子进程能 import 本包。

    说明：
    - 测试/嵌入式场景下，当前进程可能通过 `sys.path` 加载本包，但环境变量里没有 `PYTHONPATH`；
    - 相对 `PYTHONPATH` 在子进程 cwd 不同时会失效，这里统一归一化为绝对路径。
    """

    out = dict(os.environ) if env is None else dict(env)
    if not str(out.get("PYTHONPATH") or "").strip():
        import worker_offload as _pkg  # local import to avoid circular

        out["PYTHONPATH"] = str(Path(_pkg.__file__).resolve().parent.parent)
        return out

    parts = []
    base = Path.cwd().resolve()
    for raw in str(out["PYTHONPATH"]).split(os.pathsep):
        if not raw:
            continue
        p = Path(raw)
        if not p.is_absolute():
            p = (base / p).resolve()
        parts.append(str(p))
    if parts:
        out["PYTHONPATH"] = os.pathsep.join(parts)
    return out


class Dispatcher:
    """
    worker 派发器。

    参数：
    - config：WorkerOffloadConfig（缺省使用代码内默认值）
    - registry：可注入的 WorkerRegistry（缺省新建；多个 Dispatcher 可共享同一 registry）
    """

    def __init__(
        self,
        *,
        config: Optional[WorkerOffloadConfig] = None,
        registry: Optional[WorkerRegistry] = None,
    ) -> None:
        self._config = config or WorkerOffloadConfig()
        self._registry = registry if registry is not None else WorkerRegistry()

    @property
    def config(self) -> WorkerOffloadConfig:
        return self._config

    @property
    def registry(self) -> WorkerRegistry:
        return self._registry

    def resolve_options(self, options: OptionsLike = None) -> SpawnOptions:
        """把配置中的默认 SpawnOptions 与调用方显式传入的字段合并（显式字段优先）。"""

        base = self._config.defaults.model_dump()
        if options is None:
            return SpawnOptions.model_validate(base)
        if isinstance(options, SpawnOptions):
            overlay = {k: getattr(options, k) for k in options.model_fields_set}
        else:
            overlay = dict(options)
        base.update(overlay)
        return SpawnOptions.model_validate(base)

    async def start_session(
        self,
        command: str,
        args: Sequence[str] = (),
        options: OptionsLike = None,
    ) -> WorkerSession:
        """创建 session 但不派发任务（需要直接操作 session 的调用方使用）。"""

        return await WorkerSession.create(
            command,
            args,
            self.resolve_options(options),
            registry=self._registry,
            config=self._config,
        )

    async def submit(
        self,
        command: str,
        args: Sequence[str] = (),
        task: Any = None,
        options: OptionsLike = None,
    ) -> "asyncio.Future[Any]":
        """
        派发一个任务，返回在结果到达时完成的 Future。

        异常（直接抛出，不经过 Future）：
        - ValueError：options 关闭了 ipc
        - SpawnError：子进程创建失败
        - ChannelClosedError：发送 `start` 前通道已关闭（该 session 会被终止）
        - ValueError：task 无法表示为 JSON（该 session 会被终止）

        Future 的失败：
        - WorkerDiedError / WorkerTaskError（见 `WorkerSession.await_result`）
        """

        opts = self.resolve_options(options)
        if not opts.ipc:
            raise ValueError("submit requires ipc=True (no channel to deliver the task)")
        session = await self.start_session(command, args, opts)
        try:
            session.dispatch(task)
        except (ChannelClosedError, ValueError):
            session.cancel()
            raise
        logger.debug("Submitted task to session %s (pid=%s)", session.session_id, session.handle.pid)
        return asyncio.get_running_loop().create_task(session.await_result())

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        task: Any = None,
        options: OptionsLike = None,
    ) -> Any:
        """`submit` 并等待结果。"""

        fut = await self.submit(command, args, task, options)
        return await fut

    async def fork(
        self,
        target: Union[str, Path],
        args: Sequence[str] = (),
        task: Any = None,
        options: OptionsLike = None,
        *,
        module: bool = False,
    ) -> "asyncio.Future[Any]":
        """
        以当前解释器启动 Python worker（脚本路径或 `-m` 模块）并派发任务。

        参数：
        - target：脚本路径；`module=True` 时为模块名（例如 `worker_offload.worker.compute`）
        """

        opts = self.resolve_options(options)
        opts = opts.model_copy(update={"env": python_worker_env(opts.env)})
        argv = ["-m", str(target)] if module else [str(target)]
        return await self.submit(sys.executable, [*argv, *[str(a) for a in args]], task, opts)

    async def join(self) -> None:
        """等待所有未 detach 的 session 结束（join 屏障）。"""

        while True:
            pending = [s for s in self._registry.attached() if not s.is_closed]
            if not pending:
                return
            await asyncio.gather(*(s.closed() for s in pending))

    async def shutdown(self, sig: int = signal.SIGTERM) -> None:
        """
        批量终止非 detached 的 session，并等待它们结束。

        说明：
        - 以 `detached=True` 启动的 session 不受影响（其进程生命周期与父进程解耦）。
        """

        victims = [s for s in self._registry.sessions() if not s.handle.options.detached]
        for s in victims:
            s.cancel(sig)
        if victims:
            logger.debug("Shutdown: waiting for %d session(s)", len(victims))
            await asyncio.gather(*(s.closed() for s in victims))

    async def __aenter__(self) -> "Dispatcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        await self.shutdown()
