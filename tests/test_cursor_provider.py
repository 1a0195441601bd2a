"""Tests for CursorProvider."""
from __future__ import annotations

import json
import os
import stat

import pytest

from taskdeck.engine.config import ProviderSettings
from taskdeck.engine.errors import ProviderExecutionError
from taskdeck.engine.models import ErrorKind, ExecuteOptions, MessageRole
from taskdeck.engine.providers.base import TurnCounter
from taskdeck.engine.providers.cursor_provider import CursorProvider, _CursorRun


def _run(limit=None) -> _CursorRun:
    return _CursorRun(turns=TurnCounter("cursor", limit))


def _fake_cli(tmp_path, events: list[dict], exit_code: int = 0):
    """Write an executable that records its argv and stdin, then prints *events*."""
    body = "\n".join(json.dumps(e) for e in events)
    script = tmp_path / "cursor-agent"
    script.write_text(
        "#!/bin/sh\n"
        'echo "$@" > "$(dirname "$0")/args.txt"\n'
        'cat > "$(dirname "$0")/stdin.txt"\n'
        "cat <<'EOF'\n"
        f"{body}\n"
        "EOF\n"
        f"exit {exit_code}\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def test_build_command_read_only_omits_force():
    provider = CursorProvider(ProviderSettings(command="cursor-agent"))
    write = provider.build_command(ExecuteOptions(prompt="p", cwd="/tmp", model="gpt-5"))
    read = provider.build_command(
        ExecuteOptions(prompt="p", cwd="/tmp", read_only=True),
    )
    assert "--force" in write
    assert write[-2:] == ["--model", "gpt-5"]
    assert "--force" not in read
    assert read[-2:] == ["--model", "auto"]
    assert read[1:4] == ["-p", "--output-format", "stream-json"]


def test_parse_assistant_and_tool_events():
    provider = CursorProvider()
    run = _run()

    assert provider.parse_event({"type": "system", "subtype": "init"}, run) == []
    assert provider.parse_event({"type": "user", "message": {}}, run) == []

    [text] = provider.parse_event({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": "Reading the file"}]},
    }, run)
    assert text.role == MessageRole.AGENT
    assert text.text == "Reading the file"

    [use] = provider.parse_event({
        "type": "tool_call", "subtype": "started", "call_id": "c1",
        "tool_call": {"readToolCall": {"args": {"path": "README.md"}}},
    }, run)
    assert use.tool_uses[0].tool_name == "Read"
    assert use.tool_uses[0].tool_input == {"path": "README.md"}

    [result] = provider.parse_event({
        "type": "tool_call", "subtype": "completed", "call_id": "c1",
        "tool_call": {"readToolCall": {
            "args": {"path": "README.md"},
            "result": {"success": {"content": "# Title"}},
        }},
    }, run)
    block = result.tool_results[0]
    assert result.role == MessageRole.TOOL
    assert block.tool_name == "Read"
    assert block.text == "# Title"
    assert not block.is_error
    assert run.turns.turns == 1


def test_rejected_write_is_marked_denied():
    provider = CursorProvider()
    run = _run()
    provider.parse_event({
        "type": "tool_call", "subtype": "started", "call_id": "w1",
        "tool_call": {"writeToolCall": {"args": {"path": "a.txt"}}},
    }, run)
    [result] = provider.parse_event({
        "type": "tool_call", "subtype": "completed", "call_id": "w1",
        "tool_call": {"writeToolCall": {"result": {"rejected": {"reason": "no --force"}}}},
    }, run)
    block = result.tool_results[0]
    assert block.tool_name == "Write"
    assert block.is_error
    assert block.error_kind == ErrorKind.TOOL_PERMISSION_DENIED
    assert block.text == "no --force"


def test_result_text_only_when_nothing_streamed():
    provider = CursorProvider()
    run = _run()
    [final] = provider.parse_event(
        {"type": "result", "subtype": "success", "is_error": False, "result": "42"}, run,
    )
    assert final.text == "42"

    run.streamed_text = True
    assert provider.parse_event(
        {"type": "result", "subtype": "success", "result": "42"}, run,
    ) == []


def test_error_result_is_classified():
    provider = CursorProvider()
    with pytest.raises(ProviderExecutionError) as exc_info:
        provider.parse_event(
            {"type": "result", "subtype": "error", "is_error": True,
             "result": "Authentication required. Please login"},
            _run(),
        )
    assert exc_info.value.kind == ErrorKind.AUTH_EXPIRED


def test_turn_limit_raises_timeout():
    provider = CursorProvider()
    run = _run(limit=1)
    provider.parse_event({"type": "assistant", "message": {"content": "one"}}, run)
    provider.parse_event({
        "type": "tool_call", "subtype": "started", "call_id": "c1",
        "tool_call": {"lsToolCall": {"args": {}}},
    }, run)
    provider.parse_event({
        "type": "tool_call", "subtype": "completed", "call_id": "c1",
        "tool_call": {"lsToolCall": {"result": {"success": {}}}},
    }, run)
    with pytest.raises(ProviderExecutionError) as exc_info:
        provider.parse_event({"type": "assistant", "message": {"content": "two"}}, run)
    assert exc_info.value.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_execute_streams_events_from_cli(tmp_path):
    script = _fake_cli(tmp_path, [
        {"type": "system", "subtype": "init", "model": "auto"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}},
        {"type": "result", "subtype": "success", "is_error": False, "result": "Hi"},
    ])
    provider = CursorProvider(ProviderSettings(command=str(script)))
    options = ExecuteOptions(
        prompt="Say hi", cwd=str(tmp_path), read_only=True, system_prompt="Be brief.",
    )

    messages = [m async for m in provider.execute(options)]

    assert [m.text for m in messages] == ["Hi"]
    args = (tmp_path / "args.txt").read_text()
    assert "--force" not in args
    assert "--model auto" in args
    assert (tmp_path / "stdin.txt").read_text() == "Be brief.\n\nSay hi"


@pytest.mark.asyncio
async def test_execute_nonzero_exit(tmp_path):
    script = _fake_cli(tmp_path, [], exit_code=1)
    provider = CursorProvider(ProviderSettings(command=str(script)))
    with pytest.raises(ProviderExecutionError) as exc_info:
        async for _ in provider.execute(ExecuteOptions(prompt="x", cwd=str(tmp_path))):
            pass
    assert exc_info.value.kind == ErrorKind.PROCESS_CRASHED


@pytest.mark.asyncio
async def test_check_auth_with_api_key(monkeypatch):
    monkeypatch.setenv("CURSOR_API_KEY", "key")
    assert await CursorProvider().check_auth() is True


@pytest.mark.asyncio
async def test_check_auth_without_cli(monkeypatch, tmp_path):
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    provider = CursorProvider(ProviderSettings(command=os.fspath(tmp_path / "missing")))
    assert await provider.check_auth() is False
