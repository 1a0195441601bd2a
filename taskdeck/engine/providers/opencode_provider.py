"""Opencode CLI provider.

Runs ``opencode run --format json`` and demultiplexes its JSON event
stream (one event per line, each wrapping a message ``part``).
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
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
from .process import stream_process_lines

logger = logging.getLogger(__name__)

_TOOL_NAMES: dict[str, str] = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "patch": "Edit",
    "multiedit": "MultiEdit",
    "bash": "Bash",
    "grep": "Grep",
    "glob": "Glob",
    "list": "LS",
    "webfetch": "WebFetch",
    "todowrite": "TodoWrite",
    "todoread": "TodoRead",
    "task": "Task",
}

# Passed through OPENCODE_CONFIG_CONTENT, merged over the user's config.
_READ_ONLY_CONFIG = {"permission": {"edit": "deny", "bash": "deny", "webfetch": "allow"}}
_WRITE_CONFIG = {"permission": {"edit": "allow", "bash": "allow", "webfetch": "allow"}}

# Keys opencode can authenticate with besides its own auth store.
_KNOWN_KEY_VARS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "OPENROUTER_API_KEY",
    "GEMINI_API_KEY",
    "GROQ_API_KEY",
)


@dataclass
class _OpencodeRun:
    turns: TurnCounter


class OpencodeProvider(Provider):
    """Provider backed by the opencode CLI."""

    kind = ProviderKind.OPENCODE
    default_command = "opencode"

    def api_key_var(self) -> str:
        return self._settings.api_key_env or "OPENCODE_API_KEY"

    async def check_auth(self) -> bool:
        if self._settings.api_key_env and os.environ.get(self._settings.api_key_env):
            return True
        if any(os.environ.get(var) for var in _KNOWN_KEY_VARS):
            return True
        data_home = Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")
        return (data_home / "opencode" / "auth.json").is_file()

    def build_command(self, options: ExecuteOptions) -> list[str]:
        cmd = [self._command, "run", "--format", "json"]
        if options.model:
            cmd.extend(["--model", options.model])
        prompt = options.prompt
        if options.system_prompt:
            prompt = f"{options.system_prompt}\n\n{prompt}"
        cmd.append(prompt)
        return cmd

    def build_env(self, options: ExecuteOptions) -> dict[str, str] | None:
        config = _READ_ONLY_CONFIG if options.read_only else _WRITE_CONFIG
        return self._build_env({"OPENCODE_CONFIG_CONTENT": json.dumps(config)})

    async def execute(self, options: ExecuteOptions) -> AsyncIterator[Message]:
        """Run opencode and yield canonical messages."""
        run = _OpencodeRun(turns=TurnCounter(self.name, options.max_turns))
        lines = stream_process_lines(
            self.build_command(options),
            provider_id=self.name,
            cwd=options.cwd,
            env=self.build_env(options),
            timeout_seconds=options.timeout_seconds,
            grace_seconds=self._cancel_grace,
        )
        try:
            async for line in lines:
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("opencode: non-JSON line: %s", line[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                for message in self.parse_event(event, run):
                    yield message
        finally:
            await lines.aclose()

    def parse_event(self, event: dict[str, Any], run: _OpencodeRun) -> list[Message]:
        """Map one JSON event to zero or more Messages."""
        etype = event.get("type", "")
        part = event.get("part") or {}

        if etype == "step_start":
            run.turns.start_turn()
            return []

        if etype == "step_finish":
            logger.debug("opencode step finished: %s", part.get("reason"))
            return []

        if etype == "text":
            text = str(part.get("text") or "")
            if not text:
                return []
            return [Message.agent_text(text)]

        if etype == "tool_use":
            return self._parse_tool_use(part)

        if etype == "error":
            raise _error_from_event(event)

        logger.debug("opencode: ignoring event type %r", etype)
        return []

    def _parse_tool_use(self, part: dict[str, Any]) -> list[Message]:
        raw_name = str(part.get("tool") or "unknown")
        name = _TOOL_NAMES.get(raw_name.lower(), raw_name)
        call_id = part.get("callID") or part.get("id")
        state = part.get("state") or {}
        tool_input = state.get("input")
        messages = [Message(
            role=MessageRole.AGENT,
            blocks=(ContentBlock.tool_use(
                name, call_id, tool_input if isinstance(tool_input, dict) else {},
            ),),
        )]

        status = state.get("status")
        if status == "completed":
            text = _as_text(state.get("output"))
            messages.append(Message(
                role=MessageRole.TOOL,
                blocks=(ContentBlock.tool_result(call_id, text, tool_name=name),),
            ))
        elif status == "error":
            text = _as_text(state.get("error") or state.get("output"))
            messages.append(Message(
                role=MessageRole.TOOL,
                blocks=(ContentBlock.tool_result(
                    call_id,
                    text,
                    tool_name=name,
                    is_error=True,
                    error_kind=ErrorKind.TOOL_PERMISSION_DENIED
                    if is_permission_denial(text) else None,
                ),),
            ))
        return messages


def _error_from_event(event: dict[str, Any]) -> ProviderExecutionError:
    error = event.get("error") or {}
    if not isinstance(error, dict):
        error = {"data": {"message": str(error)}}
    name = str(error.get("name") or "")
    data = error.get("data") or {}
    if not isinstance(data, dict):
        data = {"message": str(data)}
    text = str(data.get("message") or name or "unknown error")
    if name == "ProviderAuthError":
        kind = ErrorKind.AUTH_EXPIRED
    elif data.get("statusCode") == 429:
        kind = ErrorKind.RATE_LIMITED
    else:
        kind = classify_failure(exit_code=None, detail=f"{name} {text}").kind
    return ProviderExecutionError(kind, f"opencode error: {text}")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)
