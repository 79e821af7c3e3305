from __future__ import annotations

import asyncio
import os
import sys

import pytest

from conftest import worker_script
from worker_offload import Dispatcher
from worker_offload.config.loader import WorkerOffloadConfig, load_config_dicts
from worker_offload.core.contracts import SpawnOptions, StdioMode
from worker_offload.core.dispatcher import python_worker_env
from worker_offload.core.errors import ChannelClosedError, SpawnError, WorkerDiedError

_COMPUTE = "worker_offload.worker.compute"


def test_sum_offloaded_to_worker(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        fut = await d.fork(_COMPUTE, task={"op": "sum", "to": 1_000_000}, module=True)
        assert await fut == 500000500000
        await d.join()
        assert len(d.registry) == 0

    asyncio.run(main())


def test_worker_exit_without_result(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        fut = await d.fork(worker_script("exit_code"), ["1"], task={"op": "sum", "to": 1})
        with pytest.raises(WorkerDiedError) as ei:
            await fut
        assert ei.value.exit_code == 1
        assert ei.value.signal is None
        await d.join()
        assert len(d.registry) == 0

    asyncio.run(main())


def test_concurrent_submissions_resolve_independently(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        slow = await d.fork(_COMPUTE, task={"op": "sleep", "ms": 300, "value": "slow"}, module=True)
        fast = await d.fork(_COMPUTE, task={"op": "echo", "value": "fast"}, module=True)
        done, _pending = await asyncio.wait({slow, fast}, return_when=asyncio.FIRST_COMPLETED)
        assert fast in done
        assert await fast == "fast"
        assert await slow == "slow"

    asyncio.run(main())


def test_registry_empty_after_many_sessions_joined(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        futs = [await d.fork(_COMPUTE, task={"op": "sum", "to": n}, module=True) for n in range(1, 9)]
        results = await asyncio.gather(*futs)
        assert results == [n * (n + 1) // 2 for n in range(1, 9)]
        await d.join()
        assert len(d.registry) == 0

    asyncio.run(main())


def test_send_after_exit_raises_channel_closed(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        s = await d.start_session(sys.executable, [worker_script("exit_code"), "0"])
        await s.closed()
        with pytest.raises(ChannelClosedError):
            s.dispatch({"op": "echo", "value": 1})
        with pytest.raises(ChannelClosedError):
            s.send("ping")
        with pytest.raises(WorkerDiedError) as ei:
            await s.await_result()
        assert ei.value.exit_code == 0

    asyncio.run(main())


def test_detached_session_survives_shutdown(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        detached = await d.fork(
            _COMPUTE,
            task={"op": "sleep", "ms": 500, "value": "still here"},
            options=SpawnOptions(detached=True),
            module=True,
        )
        attached = await d.fork(_COMPUTE, task={"op": "sleep", "ms": 30000, "value": 0}, module=True)

        await d.shutdown()

        with pytest.raises(WorkerDiedError) as ei:
            await attached
        assert ei.value.signal == "SIGTERM"
        assert len(d.registry) == 1
        assert await detached == "still here"
        await d.join()
        assert len(d.registry) == 0

    asyncio.run(main())


def test_unref_session_is_not_joined(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        opts = SpawnOptions(detached=True, env=python_worker_env(None))
        s = await d.start_session(sys.executable, ["-m", _COMPUTE], opts)
        s.dispatch({"op": "sleep", "ms": 30000, "value": 0})
        s.handle.detach()

        await asyncio.wait_for(d.join(), timeout=1)
        assert s.session_id in d.registry

        s.cancel()
        await asyncio.wait_for(s.closed(), timeout=5)
        assert len(d.registry) == 0

    asyncio.run(main())


def test_timeout_composed_by_caller(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        fut = await d.fork(_COMPUTE, task={"op": "sleep", "ms": 30000, "value": 0}, module=True)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(fut, timeout=0.2)
        # 超时只取消等待者；worker 由 shutdown 回收
        assert len(d.registry) == 1
        await d.shutdown()
        assert len(d.registry) == 0

    asyncio.run(main())


def test_context_manager_shuts_down(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        async with Dispatcher(config=fast_config) as d:
            fut = await d.fork(_COMPUTE, task={"op": "sleep", "ms": 30000, "value": 0}, module=True)
            registry = d.registry
            assert len(registry) == 1
        assert len(registry) == 0
        with pytest.raises(WorkerDiedError):
            await fut

    asyncio.run(main())


def test_submit_errors_are_raised_directly(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        with pytest.raises(SpawnError):
            await d.submit("/definitely/not/a/real/binary", task=1)
        with pytest.raises(ValueError):
            await d.submit(sys.executable, ["-c", "pass"], task=1, options={"ipc": False})
        with pytest.raises(ValueError):
            await d.fork(_COMPUTE, task=float("nan"), module=True)
        await d.join()
        assert len(d.registry) == 0

    asyncio.run(main())


def test_run_returns_value(fast_config: WorkerOffloadConfig) -> None:
    async def main() -> None:
        d = Dispatcher(config=fast_config)
        opts = {"env": python_worker_env(None), "stdio": StdioMode.IGNORE}
        assert await d.run(sys.executable, ["-m", _COMPUTE], {"op": "echo", "value": [1, "a"]}, opts) == [1, "a"]

    asyncio.run(main())


def test_resolve_options_merges_config_defaults(tmp_path) -> None:
    cfg = load_config_dicts([{"defaults": {"stdio": "ignore", "cwd": str(tmp_path)}}])
    d = Dispatcher(config=cfg)

    base = d.resolve_options()
    assert base.stdio is StdioMode.IGNORE
    assert base.cwd == tmp_path

    merged = d.resolve_options({"shell": True})
    assert merged.shell is True
    assert merged.stdio is StdioMode.IGNORE

    explicit = d.resolve_options(SpawnOptions(detached=True))
    assert explicit.detached is True
    assert explicit.stdio is StdioMode.IGNORE

    override = d.resolve_options(SpawnOptions(stdio=StdioMode.PIPED))
    assert override.stdio is StdioMode.PIPED


def test_python_worker_env_absolutizes_pythonpath(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    env = python_worker_env({"PYTHONPATH": os.pathsep.join(["rel", "", "/abs"])})
    parts = env["PYTHONPATH"].split(os.pathsep)
    assert parts == [str((tmp_path / "rel").resolve()), "/abs"]

    injected = python_worker_env({})
    import worker_offload

    assert os.path.join(injected["PYTHONPATH"], "worker_offload") == os.path.dirname(
        os.path.realpath(worker_offload.__file__)
    )


def test_dispatcher_uses_default_config() -> None:
    d = Dispatcher()
    assert d.config.lifecycle.duplicate_result_policy == "ignore"
    shared = Dispatcher(registry=d.registry)
    assert shared.registry is d.registry
