"""Worker 侧运行时（通道镜像端 + 示例 worker）。"""

from __future__ import annotations

from worker_offload.worker.channel import ParentChannel, serve

__all__ = ["ParentChannel", "serve"]
