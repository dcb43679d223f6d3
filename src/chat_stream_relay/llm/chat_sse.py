"""
Chat Completions Streaming SSE 解码器。

职责：
- 把 HTTP 响应体的原始字节流增量解码为 UTF-8 文本（多字节字符允许跨 chunk 切分）
- 按空行（`\\n\\n`）切分 SSE 事件；未完成的尾部保留到下一个 chunk，事件分隔符跨 chunk 也能正确处理
- 只消费 `data: ` 行；`[DONE]` 哨兵只做记录，不终止解码（直到底层 EOF）
- 抽取 `choices[0].delta.content` 文本增量与 `choices[0].finish_reason`（后写覆盖）

实现边界：
- 单条事件 JSON 解析失败：记录 warning 并跳过，不终止整个流
- 本模块是纯同步状态机，不做任何 I/O；网络层见 `chat_stream_relay.llm.text_stream`
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
DEFAULT_FINISH_REASON = "stop"
EVENT_DELIMITER = "\n\n"


@dataclass(frozen=True)
class StreamEvent:
    """
    解码输出事件。

    type:
    - `delta`：assistant 文本增量（`text` 为片段）
    - `done`：流已结束（`text` 为完整累积文本，`finish_reason` 为最终结束原因）
    """

    type: str
    text: Optional[str] = None
    finish_reason: Optional[str] = None


class ChatCompletionsStreamDecoder:
    """
    OpenAI-compatible chat.completions SSE 字节流解码器。

    用法：
    - 每收到一个底层 chunk，调用 `feed(chunk)`，获取 0..N 个 `delta` 事件
    - 底层 EOF 时调用 `finish()`，获取剩余 `delta` 与唯一一个 `done` 事件

    约束：
    - 一个实例只服务于一次 streaming 调用，不跨调用共享
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer: str = ""
        self._parts: List[str] = []
        self._finish_reason: str = DEFAULT_FINISH_REASON
        self._finished: bool = False
        self.done_sentinel_seen: bool = False
        self.malformed_events: int = 0

    @property
    def text(self) -> str:
        """当前已累积的完整文本。"""

        return "".join(self._parts)

    @property
    def finish_reason(self) -> str:
        """当前结束原因（未出现过任何 finish_reason 时为 `stop`）。"""

        return self._finish_reason

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        """
        处理一个底层字节 chunk，返回解析得到的 `delta` 事件列表。

        说明：
        - chunk 边界不要求与字符边界或事件边界对齐
        - 最后一个未以空行结束的片段会留在缓冲区，等待后续 chunk

        异常：
        - RuntimeError：在 `finish()` 之后继续 feed
        """

        if self._finished:
            raise RuntimeError("decoder already finished")
        if not chunk:
            return []
        return self._feed_text(self._utf8.decode(chunk, final=False))

    def finish(self) -> List[StreamEvent]:
        """
        底层 EOF 时调用：flush 解码器、处理残余事件，并产出唯一的 `done` 事件。

        说明：
        - 末尾不完整的多字节序列直接丢弃（记录 debug 日志）
        - 残余缓冲（最后一个事件缺少结尾空行）仍按一个事件处理
        - 重复调用返回空列表
        """

        if self._finished:
            return []

        pending, _flag = self._utf8.getstate()
        if pending:
            logger.debug("Discarding %d incomplete trailing byte(s) at end of stream", len(pending))
        self._utf8.reset()

        out: List[StreamEvent] = []
        rest = self._buffer
        self._buffer = ""
        if rest.strip():
            out.extend(self._handle_event(rest))

        self._finished = True
        out.append(StreamEvent(type="done", text=self.text, finish_reason=self._finish_reason))
        return out

    def _feed_text(self, text: str) -> List[StreamEvent]:
        """把解码后的文本并入缓冲区，并处理所有已完整的事件。"""

        if not text:
            return []
        # `\r` 在缓冲区末尾时保留到下一次 feed，与随后的 `\n` 一并归一化。
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        out: List[StreamEvent] = []
        while True:
            idx = self._buffer.find(EVENT_DELIMITER)
            if idx < 0:
                break
            raw_event = self._buffer[:idx]
            self._buffer = self._buffer[idx + len(EVENT_DELIMITER) :]
            out.extend(self._handle_event(raw_event))
        return out

    def _handle_event(self, raw_event: str) -> List[StreamEvent]:
        """
        处理单个 SSE 事件块。

        规则：
        - 只识别以字面量 `data: ` 开头的行；其它行（注释、`event:`、`id:`）忽略
        - 同一事件内多条 data 行按 SSE 语义以 `\\n` 拼接
        """

        data_lines = [line[len(DATA_PREFIX) :] for line in raw_event.split("\n") if line.startswith(DATA_PREFIX)]
        if not data_lines:
            return []
        return self._handle_data("\n".join(data_lines))

    def _handle_data(self, data: str) -> List[StreamEvent]:
        """处理单条 data payload（`[DONE]` 或 chat.completion.chunk JSON）。"""

        data_s = data.strip()
        if not data_s:
            return []

        if data_s == DONE_SENTINEL:
            # 哨兵不改变状态：结束原因沿用已累积值，继续读到底层 EOF。
            logger.debug("Received [DONE] sentinel; draining until transport closes")
            self.done_sentinel_seen = True
            return []

        try:
            obj = json.loads(data_s)
        except ValueError:
            self.malformed_events += 1
            logger.warning("Failed to parse SSE data: %.200s", data_s, exc_info=True)
            return []

        if not isinstance(obj, dict):
            self.malformed_events += 1
            logger.warning("Ignoring SSE data that is not a JSON object: %.200s", data_s)
            return []

        err = obj.get("error")
        if err:
            logger.warning("Received error payload inside the stream: %.500s", json.dumps(err, ensure_ascii=False))

        choices = obj.get("choices")
        if not isinstance(choices, list) or not choices:
            return []
        choice = choices[0]
        if not isinstance(choice, dict):
            return []

        out: List[StreamEvent] = []
        delta = choice.get("delta")
        if isinstance(delta, dict):
            for text in _iter_delta_texts(delta.get("content")):
                self._parts.append(text)
                out.append(StreamEvent(type="delta", text=text))

        finish_reason = choice.get("finish_reason")
        if isinstance(finish_reason, str) and finish_reason:
            self._finish_reason = finish_reason

        return out


def _iter_delta_texts(content: Any) -> Iterator[str]:
    """从 `delta.content`（字符串或 content blocks 列表）中取出非空文本。"""

    if isinstance(content, str):
        if content:
            yield content
        return
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str) and text:
                    yield text


def iter_chat_completions_stream_events(chunks: Iterable[bytes]) -> Iterator[StreamEvent]:
    """
    便捷函数：将一组原始字节 chunk 解码为事件流（末尾必有一个 `done`）。

    参数：
    - chunks：按到达顺序排列的 HTTP 响应体字节片段
    """

    decoder = ChatCompletionsStreamDecoder()
    for chunk in chunks:
        for ev in decoder.feed(chunk):
            yield ev
    for ev in decoder.finish():
        yield ev


def decode_chat_completions_stream(chunks: Iterable[bytes]) -> Dict[str, Any]:
    """
    一次性解码：返回 `{"deltas": [...], "text": ..., "finish_reason": ...}`。

    主要用于离线调试与测试（例如从抓包文件回放）。
    """

    deltas: List[str] = []
    text = ""
    finish_reason = DEFAULT_FINISH_REASON
    for ev in iter_chat_completions_stream_events(chunks):
        if ev.type == "delta" and ev.text is not None:
            deltas.append(ev.text)
        elif ev.type == "done":
            text = ev.text or ""
            finish_reason = ev.finish_reason or DEFAULT_FINISH_REASON
    return {"deltas": deltas, "text": text, "finish_reason": finish_reason}
