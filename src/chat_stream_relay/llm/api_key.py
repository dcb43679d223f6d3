"""
API token 读取（环境变量）。

说明：
- 缺失不在此处校验：返回 None，请求不带 Authorization 头，由远端 API 拒绝
- `get_env_nonempty` 同时供 bootstrap 读取 `CHAT_STREAM_RELAY_*` 使用
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

DEFAULT_API_KEY_ENV = "POLLINATIONS_API_TOKEN"


def get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """读取 env（默认 `os.environ`）并返回去空白后的非空值；未设置或为空白时返回 None。"""

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def get_api_key(*, env_var: str = DEFAULT_API_KEY_ENV, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """返回 `env_var` 中的 token（可能为 None）。"""

    return get_env_nonempty(env_var, env=env)
