"""Chat stream relay：把 chat 消息转发给 OpenAI-compatible API，并把增量文本重新流式输出。"""

from __future__ import annotations

__version__ = "0.1.0"
