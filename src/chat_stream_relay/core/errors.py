"""
Relay 内部错误分类（异常类型）。

说明：
- 框架层错误携带英文 `code/message/details`，可转换为结构化问题对象（CLI JSON 输出）。
- LLM 通信相关错误统一继承 `LlmError`，具体类型见 `chat_stream_relay.llm.errors`。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class RelayError(Exception):
    """Relay 错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（CLI 输出 errors 使用）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(RelayError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class LlmError(RelayError):
    """LLM 通信/协议错误（HTTP 状态、响应体不可读、流读取中断等）。"""
