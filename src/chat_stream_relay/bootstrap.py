"""
Bootstrap Layer（应用层启动/配置发现/来源追踪）。

设计目标：
- 保持核心模块无隐式 I/O：`OpenAIChatStreamClient` 不会自动读取 `.env` / 自动发现 overlays
- 提供可选 bootstrap 入口：CLI/Web 可复用，提升开箱体验与可排障性

优先级（高 → 低）：
- env（`CHAT_STREAM_RELAY_MODEL` / `CHAT_STREAM_RELAY_ENDPOINT_URL` / `CHAT_STREAM_RELAY_MAX_TOKENS`）
- 显式 overlay（调用方传入）
- `CHAT_STREAM_RELAY_CONFIG_PATHS`
- `<workspace_root>/config/relay.yaml`
- 内置默认配置
"""

from __future__ import annotations

import os
import re
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import yaml

from chat_stream_relay.config.defaults import load_default_config_dict
from chat_stream_relay.config.loader import RelayConfig, load_config_dicts
from chat_stream_relay.llm.api_key import get_api_key, get_env_nonempty

ENV_FILE_KEY = "CHAT_STREAM_RELAY_ENV_FILE"
CONFIG_PATHS_KEY = "CHAT_STREAM_RELAY_CONFIG_PATHS"

_ENV_OVERRIDES: Tuple[Tuple[str, Tuple[str, str]], ...] = (
    ("CHAT_STREAM_RELAY_MODEL", ("models", "chat")),
    ("CHAT_STREAM_RELAY_ENDPOINT_URL", ("llm", "endpoint_url")),
    ("CHAT_STREAM_RELAY_MAX_TOKENS", ("request", "max_tokens")),
)

_QUOTES = ('"', "'")


def _anchor(path: Union[str, Path], ws: Path) -> Path:
    """相对路径锚定到 workspace_root，并规范化。"""

    p = Path(path).expanduser()
    return (p if p.is_absolute() else ws / p).resolve()


def _parse_dotenv(text: str) -> Dict[str, str]:
    """
    解析 `.env` 文本：跳过空行与 `#` 注释，允许 `export ` 前缀，去掉成对引号。
    没有 `=` 的行忽略。
    """

    out: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("export "):
            line = line[7:].lstrip()
        key, sep, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key or key.startswith("#"):
            continue
        if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
            value = value[1:-1]
        out[key] = value
    return out


def load_dotenv_if_present(*, workspace_root: Path) -> Tuple[Optional[Path], Dict[str, str]]:
    """
    发现并解析 `.env`，返回 `(env_file_or_none, 需补充的 env)`。

    查找顺序：
    1) `CHAT_STREAM_RELAY_ENV_FILE`（相对路径相对 workspace_root）
    2) `<workspace_root>/.env`

    说明：
    - 不修改 `os.environ`；进程中已存在的变量优先，不会出现在返回值里

    异常：
    - ValueError：`CHAT_STREAM_RELAY_ENV_FILE` 指向的文件不存在
    """

    ws = Path(workspace_root).resolve()
    explicit = get_env_nonempty(ENV_FILE_KEY)
    if explicit:
        env_path = _anchor(explicit, ws)
        if not env_path.exists():
            raise ValueError(f"env file not found: {env_path}")
    else:
        env_path = ws / ".env"
        if not env_path.exists():
            return None, {}

    parsed = _parse_dotenv(env_path.read_text(encoding="utf-8"))
    return env_path, {k: v for k, v in parsed.items() if k not in os.environ}


def _unique(paths: Iterable[Path]) -> list[Path]:
    return list(dict.fromkeys(paths))


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现（顺序稳定，去重）：
    1) `<workspace_root>/config/relay.yaml`（存在时）
    2) `CHAT_STREAM_RELAY_CONFIG_PATHS`（逗号/分号分隔）
    """

    ws = Path(workspace_root).resolve()
    found: list[Path] = []
    default_overlay = ws / "config" / "relay.yaml"
    if default_overlay.exists():
        found.append(default_overlay.resolve())

    raw = get_env_nonempty(CONFIG_PATHS_KEY, env=env) or ""
    found.extend(_anchor(p.strip(), ws) for p in re.split(r"[,;]", raw) if p.strip())
    return _unique(found)


def _merge_tracked(
    base: Dict[str, Any],
    overlay: Mapping[str, Any],
    *,
    label: str,
    sources: Dict[str, str],
    prefix: str = "",
) -> None:
    """把 overlay 深度合并进 base；每个被写入的叶子字段记录 `sources[dotted.path] = label`。"""

    for key, value in overlay.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping):
            target = base.get(key)
            if not isinstance(target, dict):
                target = base[key] = {}
            _merge_tracked(target, value, label=label, sources=sources, prefix=f"{path}.")
        else:
            base[key] = deepcopy(value)
            sources[path] = label


def _read_overlay(path: Path) -> Dict[str, Any]:
    """
    异常：
    - ValueError：文件不存在或 YAML 根节点不是 mapping
    """

    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


@dataclass(frozen=True)
class ResolvedRelayConfig:
    """bootstrap 解析后的有效配置（含来源追踪）。

    字段：
    - config：校验后的 `RelayConfig`（最终生效值）
    - api_key：从有效 env（进程 env + `.env`）中读取的 token（可能为 None）
    - overlay_paths：参与合并的 overlay 文件路径列表（字符串化）
    - env_file：实际加载的 .env 路径（若无则为 None）
    - sources：叶子字段来源（例如 `models.chat` → `env:CHAT_STREAM_RELAY_MODEL`）
    """

    config: RelayConfig
    api_key: Optional[str]
    overlay_paths: list[str]
    env_file: Optional[str]
    sources: Dict[str, str]


def resolve_effective_config(
    *,
    workspace_root: Path,
    config_paths: Optional[Sequence[Path]] = None,
) -> ResolvedRelayConfig:
    """
    解析有效配置（env > 显式 overlay > 发现的 overlay > 内置默认），并返回来源追踪。

    参数：
    - workspace_root：工作区根目录（`.env`、相对 overlay 与相对 `prompt.system_path` 的锚点）
    - config_paths：调用方显式传入的 overlay（排在发现的 overlay 之后）
    """

    ws = Path(workspace_root).resolve()
    env_file, dotenv_env = load_dotenv_if_present(workspace_root=ws)
    effective_env: Dict[str, str] = {**os.environ, **dotenv_env}

    overlay_paths = discover_overlay_paths(workspace_root=ws, env=effective_env)
    overlay_paths = _unique([*overlay_paths, *(_anchor(p, ws) for p in config_paths or [])])

    entries: list[Tuple[str, Mapping[str, Any]]] = [("embedded_default", load_default_config_dict())]
    entries.extend((f"overlay:{p}", _read_overlay(p)) for p in overlay_paths)
    for env_key, (section, field_name) in _ENV_OVERRIDES:
        v = get_env_nonempty(env_key, env=effective_env)
        if v is not None:
            entries.append((f"env:{env_key}", {section: {field_name: v}}))

    merged: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    for label, d in entries:
        _merge_tracked(merged, d, label=label, sources=sources)

    cfg = load_config_dicts([merged])
    if cfg.prompt.system_path:
        prompt = cfg.prompt.model_copy(update={"system_path": str(_anchor(cfg.prompt.system_path, ws))})
        cfg = cfg.model_copy(update={"prompt": prompt})

    return ResolvedRelayConfig(
        config=cfg,
        api_key=get_api_key(env_var=cfg.llm.api_key_env, env=effective_env),
        overlay_paths=[str(p) for p in overlay_paths],
        env_file=str(env_file) if env_file is not None else None,
        sources=sources,
    )
