"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 原先写死的端点/模型/token 上限全部成为显式配置项，便于测试与多环境部署。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


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


class RelayLlmConfig(BaseModel):
    """LLM 连接配置（端点、token 环境变量名、传输层超时）。"""

    model_config = ConfigDict(extra="forbid")

    endpoint_url: str
    api_key_env: str = Field(default="POLLINATIONS_API_TOKEN")
    # None 表示不设超时；超时属于传输层策略。
    timeout_sec: Optional[float] = Field(default=60, gt=0)


class RelayModelsConfig(BaseModel):
    """模型选择。"""

    model_config = ConfigDict(extra="forbid")

    chat: str


class RelayRequestConfig(BaseModel):
    """请求参数。"""

    model_config = ConfigDict(extra="forbid")

    max_tokens: int = Field(default=8192, ge=1)


class RelayPromptConfig(BaseModel):
    """
    System prompt 来源。

    说明：
    - `system_text` 优先于 `system_path`；两者都未设置时使用内置默认 prompt。
    """

    model_config = ConfigDict(extra="forbid")

    system_text: Optional[str] = None
    system_path: Optional[str] = None


class RelayConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    llm: RelayLlmConfig
    models: RelayModelsConfig
    request: RelayRequestConfig = Field(default_factory=RelayRequestConfig)
    prompt: RelayPromptConfig = Field(default_factory=RelayPromptConfig)


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


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> RelayConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `RelayConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return RelayConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> RelayConfig:
    """
    加载并合并多个配置文件，返回校验后的 `RelayConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)


def load_default_config() -> RelayConfig:
    """只用内置默认配置构造 `RelayConfig`。"""

    from chat_stream_relay.config.defaults import load_default_config_dict

    return load_config_dicts([load_default_config_dict()])
