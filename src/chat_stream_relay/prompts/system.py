"""
System prompt 来源解析。

规则：
- 若提供 `system_text`，优先使用；
- 否则读取 `system_path`（UTF-8）；
- 两者都未提供时使用内置默认 prompt。
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from chat_stream_relay.config.defaults import load_default_system_prompt
from chat_stream_relay.config.loader import RelayPromptConfig


def get_system_prompt(cfg: Optional[RelayPromptConfig] = None) -> str:
    """返回本次请求要注入的 system prompt 文本。"""

    if cfg is not None:
        if cfg.system_text is not None:
            return cfg.system_text
        if cfg.system_path:
            return Path(cfg.system_path).expanduser().read_text(encoding="utf-8")
    return load_default_system_prompt()
