"""
Chat Stream Relay CLI（chat/payload）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- `chat`：文本片段直接写 stdout（流式）；结束摘要 JSON 写 stderr
- `payload`：stdout 输出机器可读 JSON（不发请求）
- 失败时 stdout 输出结构化 JSON issue，并返回非 0 exit code
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from chat_stream_relay import bootstrap
from chat_stream_relay.core.errors import FrameworkError, FrameworkIssue, UserError
from chat_stream_relay.llm.errors import ChatHttpStatusError, LlmError
from chat_stream_relay.llm.openai_chat import OpenAIChatStreamClient, StreamingOptions
from chat_stream_relay.prompts import get_system_prompt

EXIT_OK = 0
EXIT_USER_ERROR = 2
EXIT_LLM_ERROR = 3


def _dump_json(obj: Dict[str, Any], *, pretty: bool, stream: Any = None) -> None:
    """将 dict 输出为 JSON（末尾包含换行）。"""

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, file=stream or sys.stdout)


def _issue_payload(issue: FrameworkIssue) -> Dict[str, Any]:
    return {"ok": False, "issue": {"code": issue.code, "message": issue.message, "details": issue.details}}


def _build_parser() -> argparse.ArgumentParser:
    """构造 argparse 解析器（chat/payload 两个子命令）。"""

    parser = argparse.ArgumentParser(prog="chat-stream-relay")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="logging level for stderr (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("prompt", help="user message text")
        p.add_argument("--workspace-root", default=".", help="anchor for .env and config/relay.yaml")
        p.add_argument("--config", action="append", default=[], help="extra YAML overlay (repeatable)")
        p.add_argument("--system", default=None, help="override the system prompt")
        p.add_argument("--model", default=None, help="override models.chat")
        p.add_argument("--max-tokens", type=int, default=None, help="override request.max_tokens")
        p.add_argument("--image-url", action="append", default=[], help="attach an image_url content part")

    chat = sub.add_parser("chat", help="send a prompt and stream the reply to stdout")
    _add_common(chat)

    payload = sub.add_parser("payload", help="print the request payload without sending it")
    _add_common(payload)
    payload.add_argument("--pretty", action="store_true", help="pretty-print JSON")

    return parser


def _user_messages(prompt: str, image_urls: Sequence[str]) -> List[Dict[str, Any]]:
    """把命令行参数组装为单条 user message（有图片时使用 content parts）。"""

    if not image_urls:
        return [{"role": "user", "content": prompt}]
    parts: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
    parts.extend({"type": "image_url", "image_url": {"url": u}} for u in image_urls)
    return [{"role": "user", "content": parts}]


def _build_client(args: argparse.Namespace) -> OpenAIChatStreamClient:
    """
    按 bootstrap 语义解析配置并创建客户端。

    异常：
    - UserError：workspace/overlay/配置校验失败，或 `prompt.system_path` 无法读取
    """

    ws = Path(args.workspace_root).expanduser()
    if not ws.is_dir():
        raise UserError(
            "Workspace root is not found or not a directory.",
            code="CLI_WORKSPACE_ROOT_NOT_FOUND",
            details={"workspace_root": str(ws)},
        )
    try:
        resolved = bootstrap.resolve_effective_config(
            workspace_root=ws,
            config_paths=[Path(p) for p in args.config],
        )
    except (ValueError, OSError) as exc:
        # pydantic.ValidationError 也是 ValueError 子类
        code = "CLI_CONFIG_INVALID" if isinstance(exc, ValidationError) else "CLI_CONFIG_LOAD_FAILED"
        raise UserError("Config load failed.", code=code, details={"reason": str(exc)}) from exc

    cfg = resolved.config
    updates: Dict[str, Any] = {}
    if args.model:
        updates["models"] = cfg.models.model_copy(update={"chat": args.model})
    if args.max_tokens is not None:
        if args.max_tokens < 1:
            raise UserError("--max-tokens must be >= 1.", code="CLI_ARGUMENT_INVALID", details={"max_tokens": args.max_tokens})
        updates["request"] = cfg.request.model_copy(update={"max_tokens": args.max_tokens})
    if updates:
        cfg = cfg.model_copy(update=updates)

    system_prompt = args.system
    if system_prompt is None:
        try:
            system_prompt = get_system_prompt(cfg.prompt)
        except (OSError, UnicodeDecodeError) as exc:
            raise UserError(
                "System prompt load failed.",
                code="CLI_CONFIG_LOAD_FAILED",
                details={"system_path": cfg.prompt.system_path, "reason": str(exc)},
            ) from exc

    return OpenAIChatStreamClient(cfg, api_key=resolved.api_key, system_prompt=system_prompt)


async def _run_chat(client: OpenAIChatStreamClient, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    """流式输出回复，返回结束摘要。"""

    summary: Dict[str, Any] = {}

    def _on_finish(text: str, finish_reason: str) -> None:
        summary.update({"ok": True, "finish_reason": finish_reason, "chars": len(text)})

    async with await client.stream_text(messages, StreamingOptions(on_finish=_on_finish)) as stream:
        async for chunk in stream:
            sys.stdout.write(chunk)
            sys.stdout.flush()
    sys.stdout.write("\n")
    return summary


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI 入口；返回 exit code。"""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=args.log_level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")

    messages = _user_messages(args.prompt, args.image_url)
    try:
        client = _build_client(args)
        if args.command == "payload":
            _dump_json(client.build_payload(messages), pretty=bool(args.pretty))
            return EXIT_OK
        summary = asyncio.run(_run_chat(client, messages))
    except FrameworkError as exc:
        _dump_json(_issue_payload(exc.to_issue()), pretty=False)
        return EXIT_USER_ERROR
    except ChatHttpStatusError as exc:
        issue = FrameworkIssue(
            code="LLM_HTTP_STATUS",
            message="Chat completions API returned a non-2xx status.",
            details={"status_code": exc.status_code, "reason_phrase": exc.reason_phrase, "body": exc.body_text},
        )
        _dump_json(_issue_payload(issue), pretty=False)
        return EXIT_LLM_ERROR
    except (LlmError, httpx.HTTPError) as exc:
        issue = FrameworkIssue(code="LLM_STREAM_FAILED", message="Chat stream failed.", details={"reason": str(exc)})
        _dump_json(_issue_payload(issue), pretty=False)
        return EXIT_LLM_ERROR

    _dump_json(summary, pretty=False, stream=sys.stderr)
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
