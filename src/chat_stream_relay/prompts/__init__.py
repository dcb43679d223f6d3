from __future__ import annotations

from chat_stream_relay.prompts.system import get_system_prompt

__all__ = ["get_system_prompt"]
