"""
chat.completions 请求体组装（OpenAI wire 形态）。

说明：
- 只做形态映射，不做业务校验；不合法的输入原样进入请求，由远端 API 拒绝。
- message 只转发 `role/content`；其它字段（例如前端附带的 `toolInvocations`）不上 wire。
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence


def format_content_part(part: Any) -> Any:
    """
    映射单个 content part。

    规则：
    - `text` → `{"type": "text", "text": ...}`
    - `image_url`（带 `image_url` 对象）→ `{"type": "image_url", "image_url": {"url": ...}}`
    - 其它类型：原样返回（向前兼容）
    """

    if not isinstance(part, Mapping):
        return part
    kind = part.get("type")
    if kind == "text":
        return {"type": "text", "text": part.get("text")}
    image_url = part.get("image_url")
    if kind == "image_url" and image_url:
        url = image_url.get("url") if isinstance(image_url, Mapping) else None
        return {"type": "image_url", "image_url": {"url": url}}
    return part


def format_message(message: Mapping[str, Any]) -> Dict[str, Any]:
    """把调用方 message 映射为 wire message（content 为字符串时直接透传）。"""

    content = message.get("content")
    if isinstance(content, str):
        return {"role": message.get("role"), "content": content}
    if isinstance(content, (list, tuple)):
        return {"role": message.get("role"), "content": [format_content_part(p) for p in content]}
    return {"role": message.get("role"), "content": content}


def build_chat_payload(
    messages: Sequence[Mapping[str, Any]],
    *,
    system_prompt: str,
    model: str,
    max_tokens: int,
) -> Dict[str, Any]:
    """
    组装 streaming chat.completions 请求体。

    参数：
    - messages：有序的调用方消息列表
    - system_prompt：注入到首位的 system 消息内容
    - model：模型名（来自配置）
    - max_tokens：输出 token 上限（来自配置）

    返回：
    - dict：`{"model", "messages", "max_tokens", "stream": True}`
    """

    wire_messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    wire_messages.extend(format_message(m) for m in messages)
    return {
        "model": model,
        "messages": wire_messages,
        "max_tokens": int(max_tokens),
        "stream": True,
    }
