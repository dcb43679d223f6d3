"""
惰性、单次消费的文本片段流（async iterator）。

说明：
- 只在本地片段队列为空时才向底层拉取下一个 chunk，不会超前缓冲多于一个 chunk
- 底层真正 EOF 后：先吐完剩余片段，再释放资源，最后恰好调用一次 `on_finish(text, finish_reason)`
- 读取失败：释放资源，以 `StreamReadError` 结束迭代；`on_finish` 不会被调用
- 响应体不可迭代（已被消费或已关闭）：首次拉取时抛 `ResponseBodyUnavailableError`
- 调用方提前 `aclose()`（或退出 `async with`）：释放资源；`on_finish` 不会被调用
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Optional, Union

import httpx

from chat_stream_relay.llm.chat_sse import ChatCompletionsStreamDecoder, StreamEvent
from chat_stream_relay.llm.errors import ResponseBodyUnavailableError, StreamReadError

logger = logging.getLogger(__name__)

OnFinish = Callable[[str, str], Union[None, Awaitable[None]]]


class ChatTextStream:
    """
    把底层字节 chunk 迭代器包装为文本片段的 async iterator。

    状态：`idle → streaming → completed | failed | closed`

    参数：
    - chunks：底层字节迭代器（例如 `httpx.Response.aiter_bytes()`）
    - on_finish：可选回调（同步或 async），参数为完整文本与结束原因
    - resources：持有底层连接的 `AsyncExitStack`；任何退出路径都会被关闭

    注意：
    - 调用方必须使用 `async with`（或在 `finally` 中 `await stream.aclose()`）；
      在 `async for` 中途 `break` 而不关闭时，连接会一直占用到对象被垃圾回收
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        *,
        on_finish: Optional[OnFinish] = None,
        resources: Optional[AsyncExitStack] = None,
        decoder: Optional[ChatCompletionsStreamDecoder] = None,
    ) -> None:
        self._chunks = chunks
        self._on_finish = on_finish
        self._resources = resources
        self._decoder = decoder or ChatCompletionsStreamDecoder()
        self._pending: Deque[str] = deque()
        self._done: Optional[StreamEvent] = None
        self._finish_called = False
        self.state = "idle"

    @property
    def decoder(self) -> ChatCompletionsStreamDecoder:
        return self._decoder

    def __aiter__(self) -> "ChatTextStream":
        return self

    async def __anext__(self) -> str:
        while not self._pending:
            if self.state in ("completed", "failed", "closed"):
                raise StopAsyncIteration
            if self._done is not None:
                await self._complete()
                raise StopAsyncIteration
            await self._pull()
        return self._pending.popleft()

    async def _pull(self) -> None:
        """从底层读取一个 chunk 并解码；EOF 时 flush 解码器。"""

        self.state = "streaming"
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._enqueue(self._decoder.finish())
            return
        except httpx.StreamError as exc:
            # StreamConsumed / StreamClosed：响应体已无法迭代
            await self._release("failed")
            raise ResponseBodyUnavailableError(f"failed to get a reader from the response body: {exc}") from exc
        except (httpx.HTTPError, OSError) as exc:
            logger.warning("Streaming read failed: %s", exc)
            await self._release("failed")
            raise StreamReadError(f"stream read failed: {exc}") from exc
        except BaseException:
            await self._release("failed")
            raise
        self._enqueue(self._decoder.feed(chunk))

    def _enqueue(self, events: list[StreamEvent]) -> None:
        for ev in events:
            if ev.type == "delta" and ev.text:
                self._pending.append(ev.text)
            elif ev.type == "done":
                self._done = ev

    async def _complete(self) -> None:
        """正常结束：释放资源后恰好调用一次 `on_finish`。"""

        await self._release("completed")
        done = self._done
        if self._on_finish is None or self._finish_called or done is None:
            return
        self._finish_called = True
        result: Any = self._on_finish(done.text or "", done.finish_reason or "stop")
        if inspect.isawaitable(result):
            await result

    async def _release(self, state: str) -> None:
        self.state = state
        chunks_aclose = getattr(self._chunks, "aclose", None)
        if chunks_aclose is not None:
            await chunks_aclose()
        resources = self._resources
        self._resources = None
        if resources is not None:
            await resources.aclose()

    async def aclose(self) -> None:
        """提前关闭：释放底层连接；若尚未正常结束则不会调用 `on_finish`。"""

        if self.state in ("completed", "failed", "closed"):
            return
        self._pending.clear()
        await self._release("closed")

    async def __aenter__(self) -> "ChatTextStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        await self.aclose()
