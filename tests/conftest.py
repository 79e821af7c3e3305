from __future__ import annotations

from pathlib import Path

import pytest

from worker_offload.config.loader import WorkerOffloadConfig, load_config_dicts

WORKERS_DIR = Path(__file__).resolve().parent / "workers"


def worker_script(name: str) -> str:
    """tests/workers 下测试 worker 脚本的绝对路径。"""

    return str(WORKERS_DIR / f"{name}.py")


@pytest.fixture()
def fast_config() -> WorkerOffloadConfig:
    """缩短回收/读尽超时，避免用例在等待宽限期上耗时。"""

    return load_config_dicts([{"lifecycle": {"reclaim_grace_ms": 200, "exit_drain_timeout_ms": 500}}])
