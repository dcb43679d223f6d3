"""
LLM 层（OpenAI-compatible chat.completions streaming）。

- `chat_sse`：可离线测试的 SSE 字节流解码器
- `request_builder`：请求体组装
- `text_stream` / `openai_chat`：网络层与调用方接口
"""

from __future__ import annotations

from chat_stream_relay.llm.chat_sse import ChatCompletionsStreamDecoder, StreamEvent
from chat_stream_relay.llm.errors import ChatHttpStatusError, ResponseBodyUnavailableError, StreamReadError
from chat_stream_relay.llm.openai_chat import OpenAIChatStreamClient, StreamingOptions, stream_text
from chat_stream_relay.llm.request_builder import build_chat_payload
from chat_stream_relay.llm.text_stream import ChatTextStream

__all__ = [
    "ChatCompletionsStreamDecoder",
    "ChatHttpStatusError",
    "ChatTextStream",
    "OpenAIChatStreamClient",
    "ResponseBodyUnavailableError",
    "StreamEvent",
    "StreamReadError",
    "StreamingOptions",
    "build_chat_payload",
    "stream_text",
]
