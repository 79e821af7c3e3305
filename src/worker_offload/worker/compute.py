"""
示例 worker：把耗时计算移出父进程的事件循环。

启动方式：`python -m worker_offload.worker.compute`（通常由 `Dispatcher.fork(..., module=True)` 启动）。

task 格式：
- `{"op": "sum", "to": N}`：返回 1..N 的和（逐项累加，模拟 CPU 密集型任务）
- `{"op": "echo", "value": X}`：原样返回 X
- `{"op": "sleep", "ms": M, "value": X}`：休眠 M 毫秒后返回 X
"""

from __future__ import annotations

import sys
import time
from typing import Any

from worker_offload.worker.channel import ParentChannel, serve


def long_computation(to: int) -> int:
    total = 0
    for i in range(1, int(to) + 1):
        total += i
    return total


def compute(task: Any, channel: ParentChannel) -> Any:
    """按 `op` 分发计算。"""

    if not isinstance(task, dict):
        raise ValueError("task must be an object with an 'op' field")
    op = task.get("op")
    if op == "sum":
        return long_computation(int(task.get("to") or 0))
    if op == "echo":
        return task.get("value")
    if op == "sleep":
        time.sleep(max(0, int(task.get("ms") or 0)) / 1000.0)
        return task.get("value")
    raise ValueError(f"unknown op: {op!r}")


def main() -> int:
    serve(compute)
    return 0


if __name__ == "__main__":
    sys.exit(main())
