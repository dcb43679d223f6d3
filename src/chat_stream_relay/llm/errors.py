"""
LLM 错误类型（可分类、可回归）。

说明：
- `ChatHttpStatusError`：非 2xx 响应；在输出任何文本片段之前抛出。
- `ResponseBodyUnavailableError`：响应体不可读（已被消费或已关闭）。
- `StreamReadError`：streaming 开始后底层读取失败；已输出的片段不回滚，`on_finish` 不会被调用。
- 单条 SSE 事件 JSON 解析失败不属于异常路径：解码器记录后跳过。
"""

from __future__ import annotations

from chat_stream_relay.core.errors import LlmError


class ChatHttpStatusError(LlmError):
    """
    chat.completions 返回非 2xx。

    字段：
    - status_code：HTTP 状态码
    - reason_phrase：状态文本（如 `Unauthorized`）
    - body_text：响应体文本（错误 JSON 等，可能为空）
    """

    def __init__(self, *, status_code: int, reason_phrase: str, body_text: str) -> None:
        super().__init__(f"chat completions API error: {status_code} {reason_phrase} - {body_text}")
        self.status_code = int(status_code)
        self.reason_phrase = reason_phrase
        self.body_text = body_text


class ResponseBodyUnavailableError(LlmError):
    """响应体无法作为字节流读取（拿不到 reader）。"""


class StreamReadError(LlmError):
    """streaming 过程中读取失败（网络错误、连接中断）；原始异常见 `__cause__`。"""
