"""Cursor CLI provider.

Runs ``cursor-agent -p --output-format stream-json`` with the prompt on
stdin and maps its line-delimited JSON events onto canonical Messages.

Event shapes handled::

    {"type": "system", "subtype": "init", "model": "...", ...}
    {"type": "user", "message": {...}}                       (prompt echo)
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "..."}]}}
    {"type": "tool_call", "subtype": "started", "call_id": "c1",
     "tool_call": {"writeToolCall": {"args": {...}}}}
    {"type": "tool_call", "subtype": "completed", "call_id": "c1",
     "tool_call": {"writeToolCall": {"args": {...}, "result": {"success": {...}}}}}
    {"type": "result", "subtype": "success", "is_error": false, "result": "..."}
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..errors import ProviderExecutionError
from ..failure_classifier import classify_failure, is_permission_denial
from ..models import (
    ContentBlock,
    ErrorKind,
    ExecuteOptions,
    Message,
    MessageRole,
    ProviderKind,
)
from .base import Provider, TurnCounter
from .models import CURSOR_DEFAULT_MODEL
from .process import stream_process_lines

logger = logging.getLogger(__name__)

_TOOL_NAMES: dict[str, str] = {
    "readToolCall": "Read",
    "writeToolCall": "Write",
    "editToolCall": "Edit",
    "deleteToolCall": "Delete",
    "shellToolCall": "Bash",
    "grepToolCall": "Grep",
    "globToolCall": "Glob",
    "lsToolCall": "LS",
    "todoToolCall": "TodoWrite",
}
_DENIED_RESULT_KEYS = ("rejected", "permissionDenied", "denied")


@dataclass
class _CursorRun:
    """Per-invocation parser state."""
    turns: TurnCounter
    streamed_text: bool = False
    tool_names: dict[str, str] = field(default_factory=dict)


class CursorProvider(Provider):
    """Provider backed by the cursor-agent CLI.

    Auth: CURSOR_API_KEY (or the configured api_key_env) takes
    precedence; otherwise ``cursor-agent status`` must exit 0.
    Without ``--force`` the CLI rejects file writes and shell commands,
    which is how read-only mode is enforced.
    """

    kind = ProviderKind.CURSOR
    default_command = "cursor-agent"

    def builtin_models(self) -> tuple[str, ...]:
        return (CURSOR_DEFAULT_MODEL,)

    async def check_auth(self) -> bool:
        if os.environ.get(self.api_key_var()):
            return True
        if self._settings.api_key_env and os.environ.get(self._settings.api_key_env):
            return True
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "status",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return False
        try:
            return await asyncio.wait_for(proc.wait(), timeout=self._probe_timeout) == 0
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False

    def build_command(self, options: ExecuteOptions) -> list[str]:
        cmd = [self._command, "-p", "--output-format", "stream-json"]
        if not options.read_only:
            cmd.append("--force")
        cmd.extend(["--model", options.model or CURSOR_DEFAULT_MODEL])
        return cmd

    async def execute(self, options: ExecuteOptions) -> AsyncIterator[Message]:
        """Run cursor-agent and yield canonical messages."""
        prompt = options.prompt
        if options.system_prompt:
            prompt = f"{options.system_prompt}\n\n{prompt}"

        run = _CursorRun(turns=TurnCounter(self.name, options.max_turns))
        lines = stream_process_lines(
            self.build_command(options),
            provider_id=self.name,
            cwd=options.cwd,
            env=self._build_env(),
            stdin_payload=prompt,
            timeout_seconds=options.timeout_seconds,
            grace_seconds=self._cancel_grace,
        )
        try:
            async for line in lines:
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    # Not JSON: pass through as plain text.
                    yield Message.agent_text(line)
                    continue
                if not isinstance(event, dict):
                    continue
                for message in self.parse_event(event, run):
                    yield message
        finally:
            await lines.aclose()

    def parse_event(self, event: dict[str, Any], run: _CursorRun) -> list[Message]:
        """Map one stream-json event to zero or more Messages."""
        etype = event.get("type", "")

        if etype in ("system", "user"):
            logger.debug("cursor %s event: %s", etype, event.get("subtype", ""))
            return []

        if etype == "assistant":
            text = _assistant_text(event.get("message") or {})
            if not text:
                return []
            run.turns.agent_output()
            run.streamed_text = True
            return [Message.agent_text(text)]

        if etype == "tool_call":
            return self._parse_tool_call(event, run)

        if etype == "result":
            result_text = str(event.get("result") or "")
            if event.get("is_error") or event.get("subtype") not in (None, "success"):
                classification = classify_failure(exit_code=None, detail=result_text)
                raise ProviderExecutionError(
                    classification.kind,
                    f"cursor-agent reported an error: {result_text or event.get('subtype')}",
                )
            if result_text and not run.streamed_text:
                return [Message.agent_text(result_text)]
            return []

        if etype == "error":
            text = str(event.get("message") or event.get("error") or event)
            classification = classify_failure(exit_code=None, detail=text)
            raise ProviderExecutionError(
                classification.kind, f"cursor-agent error: {text}",
            )

        logger.debug("cursor: ignoring event type %r", etype)
        return []

    def _parse_tool_call(self, event: dict[str, Any], run: _CursorRun) -> list[Message]:
        call_id = event.get("call_id")
        tool_call = event.get("tool_call") or {}
        name, payload = _unwrap_tool_call(tool_call)

        if event.get("subtype") == "started":
            run.turns.agent_output()
            if call_id:
                run.tool_names[call_id] = name
            return [Message(
                role=MessageRole.AGENT,
                blocks=(ContentBlock.tool_use(name, call_id, _tool_args(payload)),),
            )]

        if event.get("subtype") == "completed":
            run.turns.tool_finished()
            text, is_error, denied = _tool_outcome(payload.get("result") or {})
            return [Message(
                role=MessageRole.TOOL,
                blocks=(ContentBlock.tool_result(
                    call_id,
                    text,
                    tool_name=run.tool_names.get(call_id or "", name),
                    is_error=is_error,
                    error_kind=ErrorKind.TOOL_PERMISSION_DENIED if denied else None,
                ),),
            )]
        return []


def _assistant_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    parts = []
    for item in content or []:
        if isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text", "")))
    return "".join(parts)


def _unwrap_tool_call(tool_call: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Return (canonical tool name, inner payload) of a tool_call object."""
    for key, payload in tool_call.items():
        if not isinstance(payload, dict):
            continue
        if key == "function":
            return str(payload.get("name", "function")), payload
        if key in _TOOL_NAMES:
            return _TOOL_NAMES[key], payload
        if key.endswith("ToolCall"):
            base = key[: -len("ToolCall")]
            return base[:1].upper() + base[1:], payload
    return "unknown", {}


def _tool_args(payload: dict[str, Any]) -> dict[str, Any]:
    args = payload.get("args")
    if isinstance(args, dict):
        return args
    arguments = payload.get("arguments")
    if isinstance(arguments, str):
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            return {"arguments": arguments}
        return parsed if isinstance(parsed, dict) else {"arguments": parsed}
    return {}


def _tool_outcome(result: dict[str, Any]) -> tuple[str, bool, bool]:
    """Return (text, is_error, denied) for a completed tool call."""
    for key in _DENIED_RESULT_KEYS:
        if key in result:
            return _stringify(result[key]) or "permission denied", True, True
    if "error" in result:
        text = _stringify(result["error"])
        return text, True, is_permission_denial(text)
    if "success" in result:
        return _stringify(result["success"]), False, False
    return _stringify(result), False, False


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("content", "output", "stdout", "errorMessage", "message", "reason"):
            if isinstance(value.get(key), str) and value[key]:
                return value[key]
    return json.dumps(value, ensure_ascii=False)
