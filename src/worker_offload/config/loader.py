"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 默认值以 `worker_offload/assets/default.yaml` 为准（安装包内也会携带）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping

import yaml
from pydantic import BaseModel, ConfigDict, Field

from worker_offload.core.codec import DEFAULT_MAX_FRAME_BYTES
from worker_offload.core.contracts import SpawnOptions


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class WorkerOffloadConfig(BaseModel):
    """Dispatcher 运行配置（根节点）。"""

    model_config = ConfigDict(extra="forbid")

    class Channel(BaseModel):
        """结构化通道参数。"""

        model_config = ConfigDict(extra="forbid")

        max_frame_bytes: int = Field(default=DEFAULT_MAX_FRAME_BYTES, ge=1)

    class Lifecycle(BaseModel):
        """
        session 生命周期参数。

        字段：
        - reclaim_grace_ms：结果送达并 half-close 通道后，等待 worker 自行退出的时间；超时则 terminate
        - exit_drain_timeout_ms：进程退出后，等待通道/stdio 读尽的上限
        - duplicate_result_policy：重复 result 的处理方式（ignore=记录告警后丢弃；terminate=视为协议违规并终止 worker）
        """

        model_config = ConfigDict(extra="forbid")

        reclaim_grace_ms: int = Field(default=2000, ge=0)
        exit_drain_timeout_ms: int = Field(default=1000, ge=0)
        duplicate_result_policy: Literal["ignore", "terminate"] = Field(default="ignore")

    class Stdio(BaseModel):
        """piped 模式下 stdout/stderr 的尾部缓冲上限（字节）。"""

        model_config = ConfigDict(extra="forbid")

        tail_bytes: int = Field(default=64 * 1024, ge=0)

    config_version: int = Field(default=1, ge=1)
    channel: Channel = Field(default_factory=Channel)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    stdio: Stdio = Field(default_factory=Stdio)
    defaults: SpawnOptions = Field(default_factory=SpawnOptions)


def default_config_path() -> Path:
    """返回包内默认配置文件路径。"""

    import worker_offload.assets as _assets

    return (Path(_assets.__file__).resolve().parent / "default.yaml").resolve()


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict（空文件视为空 mapping）。"""

    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> WorkerOffloadConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `WorkerOffloadConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return WorkerOffloadConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> WorkerOffloadConfig:
    """
    加载并合并多个配置文件，返回校验后的 `WorkerOffloadConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)


def load_default_config(*overlay_paths: Path) -> WorkerOffloadConfig:
    """包内 default.yaml + 可选 overlays。"""

    return load_config([default_config_path(), *overlay_paths])
