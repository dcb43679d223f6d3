from __future__ import annotations

import asyncio
import json
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
import pytest

from chat_stream_relay.config.loader import RelayConfig, load_config_dicts
from chat_stream_relay.llm.errors import ChatHttpStatusError, ResponseBodyUnavailableError, StreamReadError
from chat_stream_relay.llm.openai_chat import OpenAIChatStreamClient, StreamingOptions, stream_text
from chat_stream_relay.llm.text_stream import ChatTextStream

EXAMPLE_CHUNKS = [
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}\n\ndata: [DONE]\n\n',
]


class _ChunkStream(httpx.AsyncByteStream):
    """
    伪造 SSE 响应体：按给定 chunk 逐个产出，可在末尾抛出传输层异常。

    记录：
    - pulled：已被读取的 chunk 数（用于验证不会超前读取）
    - closed：响应体是否已被释放
    """

    def __init__(self, chunks: List[bytes], *, exc: Optional[BaseException] = None) -> None:
        self._chunks = list(chunks)
        self._exc = exc
        self.pulled = 0
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            self.pulled += 1
            yield chunk
        if self._exc is not None:
            raise self._exc

    async def aclose(self) -> None:
        self.closed = True


def _cfg(**prompt: Any) -> RelayConfig:
    return load_config_dicts(
        [
            {
                "llm": {"endpoint_url": "http://example.test/openai", "api_key_env": "TEST_RELAY_TOKEN"},
                "models": {"chat": "model-x"},
                "request": {"max_tokens": 16},
                "prompt": prompt or {"system_text": "SYS"},
            }
        ]
    )


def _transport(
    body: _ChunkStream, *, status_code: int = 200
) -> Tuple[httpx.MockTransport, List[httpx.Request]]:
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, headers={"content-type": "text/event-stream"}, stream=body)

    return httpx.MockTransport(_handler), seen


def test_stream_text_example_fragments_and_on_finish_once() -> None:
    body = _ChunkStream(EXAMPLE_CHUNKS)
    transport, seen = _transport(body)
    calls: List[Tuple[str, str]] = []
    client = OpenAIChatStreamClient(_cfg(), api_key="sk-test", transport=transport)

    async def _run() -> List[str]:
        stream = await client.stream_text(
            [{"role": "user", "content": "hi"}],
            StreamingOptions(on_finish=lambda text, reason: calls.append((text, reason))),
        )
        out = [chunk async for chunk in stream]
        # 已耗尽的流再次迭代不会重复回调
        assert [chunk async for chunk in stream] == []
        return out

    fragments = asyncio.run(_run())

    assert fragments == ["Hel", "lo"]
    assert calls == [("Hello", "stop")]
    assert body.closed is True

    assert len(seen) == 1
    req = seen[0]
    assert req.method == "POST"
    assert str(req.url) == "http://example.test/openai"
    assert req.headers["content-type"] == "application/json"
    assert req.headers["authorization"] == "Bearer sk-test"
    assert json.loads(req.content) == {
        "model": "model-x",
        "messages": [{"role": "system", "content": "SYS"}, {"role": "user", "content": "hi"}],
        "max_tokens": 16,
        "stream": True,
    }


def test_stream_text_async_on_finish_keyword_overrides_options() -> None:
    transport, _ = _transport(_ChunkStream(EXAMPLE_CHUNKS))
    got: Dict[str, Any] = {}

    async def _async_cb(text: str, reason: str) -> None:
        await asyncio.sleep(0)
        got["kw"] = (text, reason)

    def _options_cb(text: str, reason: str) -> None:  # pragma: no cover
        got["options"] = (text, reason)

    async def _run() -> None:
        client = OpenAIChatStreamClient(_cfg(), api_key="k", transport=transport)
        stream = await client.stream_text([], StreamingOptions(on_finish=_options_cb), on_finish=_async_cb)
        async for _ in stream:
            pass

    asyncio.run(_run())
    assert got == {"kw": ("Hello", "stop")}


def test_stream_text_non_2xx_fails_before_any_fragment() -> None:
    body = _ChunkStream([b'{"error":{"message":"Invalid API key"}}'])
    transport, _ = _transport(body, status_code=401)
    calls: List[Any] = []

    async def _run() -> None:
        client = OpenAIChatStreamClient(_cfg(), api_key="bad", transport=transport)
        await client.stream_text([{"role": "user", "content": "hi"}], on_finish=lambda *a: calls.append(a))

    with pytest.raises(ChatHttpStatusError) as ei:
        asyncio.run(_run())

    assert ei.value.status_code == 401
    assert ei.value.reason_phrase == "Unauthorized"
    assert "Invalid API key" in ei.value.body_text
    assert "401 Unauthorized" in str(ei.value)
    assert calls == []
    assert body.closed is True


def test_stream_text_mid_stream_read_error_keeps_fragments_and_skips_callback() -> None:
    body = _ChunkStream(
        [b'data: {"choices":[{"delta":{"content":"a"}}]}\n\n'],
        exc=httpx.ReadError("connection reset"),
    )
    transport, _ = _transport(body)
    calls: List[Any] = []
    received: List[str] = []

    async def _run() -> str:
        client = OpenAIChatStreamClient(_cfg(), api_key="k", transport=transport)
        stream = await client.stream_text([], on_finish=lambda *a: calls.append(a))
        with pytest.raises(StreamReadError) as ei:
            async for chunk in stream:
                received.append(chunk)
        assert isinstance(ei.value.__cause__, httpx.ReadError)
        return stream.state

    state = asyncio.run(_run())

    assert received == ["a"]
    assert calls == []
    assert state == "failed"
    assert body.closed is True


def test_stream_text_early_close_releases_and_skips_callback() -> None:
    body = _ChunkStream(EXAMPLE_CHUNKS)
    transport, _ = _transport(body)
    calls: List[Any] = []

    async def _run() -> Tuple[str, str]:
        client = OpenAIChatStreamClient(_cfg(), api_key="k", transport=transport)
        async with await client.stream_text([], on_finish=lambda *a: calls.append(a)) as stream:
            first = await stream.__anext__()
        return first, stream.state

    first, state = asyncio.run(_run())

    assert first == "Hel"
    assert state == "closed"
    assert calls == []
    assert body.closed is True


def test_stream_text_reads_at_most_one_chunk_ahead() -> None:
    body = _ChunkStream(
        [
            b'data: {"choices":[{"delta":{"content":"1"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"2"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"3"}}]}\n\n',
        ]
    )
    transport, _ = _transport(body)

    async def _run() -> List[int]:
        client = OpenAIChatStreamClient(_cfg(), api_key="k", transport=transport)
        pulled: List[int] = []
        async with await client.stream_text([]) as stream:
            async for _ in stream:
                pulled.append(body.pulled)
        return pulled

    assert asyncio.run(_run()) == [1, 2, 3]


def test_stream_text_processes_data_after_done_sentinel_until_close() -> None:
    body = _ChunkStream(
        [
            b'data: {"choices":[{"delta":{"content":"a"}}]}\n\ndata: [DONE]\n\n',
            b'data: {"choices":[{"delta":{"content":"b"},"finish_reason":"length"}]}\n\n',
        ]
    )
    transport, _ = _transport(body)
    calls: List[Tuple[str, str]] = []

    async def _run() -> List[str]:
        client = OpenAIChatStreamClient(_cfg(), api_key="k", transport=transport)
        stream = await client.stream_text([], on_finish=lambda t, r: calls.append((t, r)))
        return [c async for c in stream]

    assert asyncio.run(_run()) == ["a", "b"]
    assert calls == [("ab", "length")]


def test_stream_text_api_key_from_env_and_missing_key_omits_header(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    async def _auth_header() -> Optional[str]:
        transport, seen = _transport(_ChunkStream([]))
        client = OpenAIChatStreamClient(_cfg(), transport=transport)
        async with await client.stream_text([]) as stream:
            async for _ in stream:
                pass
        return seen[0].headers.get("authorization")

    monkeypatch.setenv("TEST_RELAY_TOKEN", "env-token")
    assert asyncio.run(_auth_header()) == "Bearer env-token"

    monkeypatch.delenv("TEST_RELAY_TOKEN", raising=False)
    assert asyncio.run(_auth_header()) is None


def test_stream_text_on_finish_with_empty_body_reports_default_stop() -> None:
    transport, _ = _transport(_ChunkStream([]))
    calls: List[Tuple[str, str]] = []

    async def _run() -> List[str]:
        stream = await stream_text(
            [{"role": "user", "content": "hi"}],
            StreamingOptions(on_finish=lambda t, r: calls.append((t, r))),
            config=_cfg(),
            api_key="k",
            transport=transport,
        )
        return [c async for c in stream]

    assert asyncio.run(_run()) == []
    assert calls == [("", "stop")]


def test_module_stream_text_uses_system_prompt_override() -> None:
    transport, seen = _transport(_ChunkStream(EXAMPLE_CHUNKS))

    async def _run() -> str:
        stream = await stream_text([], config=_cfg(), api_key="k", system_prompt="OVERRIDE", transport=transport)
        return "".join([c async for c in stream])

    assert asyncio.run(_run()) == "Hello"
    assert json.loads(seen[0].content)["messages"][0] == {"role": "system", "content": "OVERRIDE"}


def test_stream_text_accepts_buffered_response_body() -> None:
    # httpx 对 content=bytes 的响应会在构造时读完并标记为已关闭，但仍可重放
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"".join(EXAMPLE_CHUNKS))

    calls: List[Tuple[str, str]] = []

    async def _run() -> List[str]:
        client = OpenAIChatStreamClient(_cfg(), api_key="k", transport=httpx.MockTransport(_handler))
        async with await client.stream_text([], on_finish=lambda t, r: calls.append((t, r))) as stream:
            return [c async for c in stream]

    assert asyncio.run(_run()) == ["Hel", "lo"]
    assert calls == [("Hello", "stop")]
    assert len(seen) == 1


def test_text_stream_closed_body_raises_body_unavailable() -> None:
    released: List[str] = []

    async def _closed_chunks() -> AsyncIterator[bytes]:
        raise httpx.StreamClosed()
        yield b""  # pragma: no cover

    async def _run() -> str:
        resources = AsyncExitStack()
        resources.callback(lambda: released.append("released"))
        stream = ChatTextStream(_closed_chunks(), resources=resources)
        with pytest.raises(ResponseBodyUnavailableError) as ei:
            await stream.__anext__()
        assert isinstance(ei.value.__cause__, httpx.StreamClosed)
        return stream.state

    assert asyncio.run(_run()) == "failed"
    assert released == ["released"]
