"""
OpenAI-compatible chat.completions streaming 客户端（网络层）。

流程：
- messages → `build_chat_payload` → HTTP POST → 字节流 → `ChatTextStream`（文本片段 + `on_finish`）

约束：
- 不做重试；不做鉴权之外的任何请求改写
- 非 2xx：先读取响应体再抛 `ChatHttpStatusError`，保证错误上下文可观测
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

import httpx

from chat_stream_relay.config.loader import RelayConfig, load_default_config
from chat_stream_relay.llm.api_key import get_api_key
from chat_stream_relay.llm.errors import ChatHttpStatusError
from chat_stream_relay.llm.request_builder import build_chat_payload
from chat_stream_relay.llm.text_stream import ChatTextStream, OnFinish
from chat_stream_relay.prompts.system import get_system_prompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamingOptions:
    """
    streaming 调用选项。

    字段：
    - on_finish：`(full_text, finish_reason)` 回调（同步或 async）；只在底层正常 EOF 时调用一次
    """

    on_finish: Optional[OnFinish] = None


def _redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """日志用：隐藏 Authorization 头中的 token。"""

    out: Dict[str, str] = {}
    for k, v in headers.items():
        out[k] = "Bearer <redacted>" if k.lower() == "authorization" else v
    return out


class OpenAIChatStreamClient:
    """
    chat.completions streaming 客户端。

    参数：
    - `cfg`：配置（端点、模型、max_tokens、超时等）
    - `api_key`：可选 token 覆盖（仅内存；优先于环境变量）
    - `system_prompt`：可选 system prompt 覆盖（优先于 `cfg.prompt`）
    - `transport`：可选 httpx transport（测试/自定义连接池）
    """

    def __init__(
        self,
        cfg: RelayConfig,
        *,
        api_key: Optional[str] = None,
        system_prompt: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = cfg
        self._api_key_override = api_key
        self._system_prompt_override = system_prompt
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        """
        构造请求头。

        说明：
        - token 缺失时不带 Authorization 头，由远端 API 拒绝（此处不校验）
        """

        headers = {"Content-Type": "application/json"}
        key = self._api_key_override or get_api_key(env_var=self._cfg.llm.api_key_env)
        if key:
            headers["Authorization"] = f"Bearer {key}"
        else:
            logger.debug("No API token found in %s; sending request without Authorization", self._cfg.llm.api_key_env)
        return headers

    def build_payload(self, messages: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
        """按当前配置组装请求体（system prompt 注入在首位）。"""

        system_prompt = self._system_prompt_override
        if system_prompt is None:
            system_prompt = get_system_prompt(self._cfg.prompt)
        return build_chat_payload(
            messages,
            system_prompt=system_prompt,
            model=self._cfg.models.chat,
            max_tokens=self._cfg.request.max_tokens,
        )

    async def stream_text(
        self,
        messages: Sequence[Mapping[str, Any]],
        options: Optional[StreamingOptions] = None,
        *,
        on_finish: Optional[OnFinish] = None,
    ) -> ChatTextStream:
        """
        发起 streaming 请求，返回文本片段的惰性单次序列。

        说明：
        - `on_finish` 关键字参数优先于 `options.on_finish`
        - 返回前已确认 HTTP 2xx；调用方应 `async with` 或 `aclose()` 以便提前结束时释放连接

        异常：
        - ChatHttpStatusError：非 2xx（在输出任何片段之前）
        - 响应体不可读时由返回的流在首次拉取时抛出 `ResponseBodyUnavailableError`
        - httpx.RequestError：连接建立失败等传输层错误
        """

        callback = on_finish if on_finish is not None else (options.on_finish if options is not None else None)
        payload = self.build_payload(messages)
        headers = self._headers()
        url = self._cfg.llm.endpoint_url

        logger.debug(
            "POST %s headers=%s model=%s messages=%d",
            url,
            _redact_headers(headers),
            payload["model"],
            len(payload["messages"]),
        )

        resources = AsyncExitStack()
        try:
            client = await resources.enter_async_context(
                httpx.AsyncClient(timeout=httpx.Timeout(self._cfg.llm.timeout_sec), transport=self._transport)
            )
            resp = await resources.enter_async_context(client.stream("POST", url, json=payload, headers=headers))
            logger.debug("Response status: %s %s", resp.status_code, resp.reason_phrase)

            if not resp.is_success:
                body_text = ""
                try:
                    await resp.aread()
                    body_text = resp.text
                except httpx.HTTPError:
                    logger.debug("Failed to read error response body", exc_info=True)
                logger.warning("Chat completions API error: %s %s - %.500s", resp.status_code, resp.reason_phrase, body_text)
                raise ChatHttpStatusError(
                    status_code=resp.status_code,
                    reason_phrase=resp.reason_phrase,
                    body_text=body_text,
                )
        except BaseException:
            await resources.aclose()
            raise

        return ChatTextStream(resp.aiter_bytes(), on_finish=callback, resources=resources)


async def stream_text(
    messages: Sequence[Mapping[str, Any]],
    options: Optional[StreamingOptions] = None,
    *,
    config: Optional[RelayConfig] = None,
    api_key: Optional[str] = None,
    system_prompt: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ChatTextStream:
    """
    便捷入口：用给定（或内置默认）配置发起一次 streaming 调用。

    示例：
    ```
    async with await stream_text(messages, StreamingOptions(on_finish=cb)) as stream:
        async for chunk in stream:
            ...
    ```
    """

    cfg = config or load_default_config()
    client = OpenAIChatStreamClient(cfg, api_key=api_key, system_prompt=system_prompt, transport=transport)
    return await client.stream_text(messages, options)
