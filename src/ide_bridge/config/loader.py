"""
配置加载器（YAML）。

默认配置：`src/ide_bridge/assets/default.yaml`

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
- 环境变量 overlay：
  - `IDE_BRIDGE_CONFIG_PATHS`：逗号/分号分隔的 YAML 路径（追加在显式 paths 之后）
  - `IDE_BRIDGE_EXTRA_ARGS`：覆盖 `backend.extra_args`
"""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ide_bridge.config.defaults import load_default_config_dict

ENV_CONFIG_PATHS = "IDE_BRIDGE_CONFIG_PATHS"
ENV_EXTRA_ARGS = "IDE_BRIDGE_EXTRA_ARGS"


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（包括 list）：overlay 整体覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class BridgeConfig(BaseModel):
    """bridge 监听与 SSE 参数。"""

    model_config = ConfigDict(extra="forbid")

    host: str = "127.0.0.1"
    path_prefix: str = "/bridge"
    keepalive_sec: float = Field(default=15, gt=0)
    subscriber_queue_size: int = Field(default=256, ge=1)

    @field_validator("path_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        """路径前缀统一为 `/xxx` 形式（无尾部 `/`）。"""

        v = "/" + str(value or "").strip().strip("/")
        if v == "/":
            raise ValueError("bridge.path_prefix must not be empty")
        return v


class BackendConfig(BaseModel):
    """后端二进制解析与启动参数。"""

    model_config = ConfigDict(extra="forbid")

    binary_env: str = "OPENCODE_BIN"
    bundle_root: Optional[str] = None
    extra_args: str = ""
    workspace_root: Optional[str] = None
    connect_timeout_sec: float = Field(default=300, gt=0)
    terminate_grace_sec: float = Field(default=5, ge=0)
    version_check_timeout_sec: float = Field(default=5, gt=0)
    listen_pattern: str = r"server listening on (https?://\S+)"


class DiscoveryConfig(BaseModel):
    """复用已运行后端的探测参数。"""

    model_config = ConfigDict(extra="forbid")

    priority_ports: List[int] = Field(default_factory=lambda: [4096, 60189, 43665, 40499])
    health_path: str = "/session"
    probe_timeout_sec: float = Field(default=1.0, gt=0)
    process_scan: bool = True
    process_scan_timeout_sec: float = Field(default=3.0, gt=0)

    @field_validator("priority_ports")
    @classmethod
    def _check_ports(cls, value: List[int]) -> List[int]:
        """端口必须位于 1..65535。"""

        for port in value:
            if not 0 < int(port) < 65536:
                raise ValueError(f"invalid port: {port}")
        return value


class RelayConfig(BaseModel):
    """后端 REST/SSE 路径。"""

    model_config = ConfigDict(extra="forbid")

    event_path: str = "/event"
    session_path: str = "/session"
    prompt_path: str = "/session/{session_id}/prompt_async"
    request_timeout_sec: float = Field(default=30, gt=0)


class LoggingConfig(BaseModel):
    """日志级别。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class IdeBridgeConfig(BaseModel):
    """ide-bridge 顶层配置。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = 1
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """读取 env 并返回非空白字符串（否则视为未设置）。"""

    v = (os.environ if env is None else env).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（保序，去掉空项）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: Iterable[Dict[str, Any]]) -> IdeBridgeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `IdeBridgeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return IdeBridgeConfig.model_validate(merged)


def load_config(
    paths: Iterable[str | Path] = (),
    *,
    env: Optional[Mapping[str, str]] = None,
    include_defaults: bool = True,
) -> IdeBridgeConfig:
    """
    按 defaults → 显式 paths → env paths → env 字段覆盖 的顺序加载配置。

    参数：
    - paths：显式 YAML overlay 路径
    - env：环境变量映射（默认 `os.environ`；测试可注入）
    - include_defaults：是否以内置 default.yaml 为底

    异常：
    - FileNotFoundError / ValueError：overlay 文件不存在或根节点不是 mapping
    - pydantic.ValidationError：合并后的配置未通过 schema 校验
    """

    dicts: List[Dict[str, Any]] = []
    if include_defaults:
        dicts.append(load_default_config_dict())
    for p in paths:
        dicts.append(_load_yaml_file(Path(p)))

    raw_paths = _get_env_nonempty(ENV_CONFIG_PATHS, env=env)
    if raw_paths:
        for p in _split_paths(raw_paths):
            dicts.append(_load_yaml_file(Path(p)))

    extra_args = _get_env_nonempty(ENV_EXTRA_ARGS, env=env)
    if extra_args is not None:
        dicts.append({"backend": {"extra_args": extra_args}})

    return load_config_dicts(dicts)
