"""配置（YAML overlay + pydantic 校验）。"""

from __future__ import annotations

from worker_offload.config.loader import (
    WorkerOffloadConfig,
    default_config_path,
    load_config,
    load_config_dicts,
    load_default_config,
)

__all__ = [
    "WorkerOffloadConfig",
    "default_config_path",
    "load_config",
    "load_config_dicts",
    "load_default_config",
]
