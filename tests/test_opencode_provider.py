"""Tests for OpencodeProvider."""
from __future__ import annotations

import json
import stat

import pytest

from taskdeck.engine.config import ProviderSettings
from taskdeck.engine.errors import ProviderExecutionError
from taskdeck.engine.models import ErrorKind, ExecuteOptions, MessageRole
from taskdeck.engine.providers.base import TurnCounter
from taskdeck.engine.providers.opencode_provider import OpencodeProvider, _OpencodeRun


def _run(limit=None) -> _OpencodeRun:
    return _OpencodeRun(turns=TurnCounter("opencode", limit))


def test_build_command_and_env():
    provider = OpencodeProvider(ProviderSettings(command="opencode"))
    options = ExecuteOptions(
        prompt="Explain main.py", cwd="/tmp", model="anthropic/claude-sonnet-4-5",
        read_only=True,
    )
    cmd = provider.build_command(options)
    assert cmd[1:4] == ["run", "--format", "json"]
    assert cmd[4:6] == ["--model", "anthropic/claude-sonnet-4-5"]
    assert cmd[-1] == "Explain main.py"

    env = provider.build_env(options)
    config = json.loads(env["OPENCODE_CONFIG_CONTENT"])
    assert config["permission"]["edit"] == "deny"
    assert config["permission"]["bash"] == "deny"

    options.read_only = False
    config = json.loads(provider.build_env(options)["OPENCODE_CONFIG_CONTENT"])
    assert config["permission"]["edit"] == "allow"


def test_parse_text_and_completed_tool():
    provider = OpencodeProvider()
    run = _run()
    assert provider.parse_event({"type": "step_start", "part": {}}, run) == []

    [text] = provider.parse_event({"type": "text", "part": {"text": "Looking"}}, run)
    assert text.role == MessageRole.AGENT
    assert text.text == "Looking"

    use, result = provider.parse_event({
        "type": "tool_use",
        "part": {
            "tool": "read",
            "callID": "t1",
            "state": {"status": "completed", "input": {"filePath": "main.py"},
                      "output": "print('hi')"},
        },
    }, run)
    assert use.tool_uses[0].tool_name == "Read"
    assert use.tool_uses[0].tool_input == {"filePath": "main.py"}
    assert result.role == MessageRole.TOOL
    assert result.tool_results[0].text == "print('hi')"
    assert result.tool_results[0].tool_id == "t1"


def test_denied_tool_error():
    provider = OpencodeProvider()
    _, result = provider.parse_event({
        "type": "tool_use",
        "part": {
            "tool": "edit",
            "callID": "t2",
            "state": {"status": "error", "input": {},
                      "error": "The user has specified a rule which prevents you from using this specific tool call"},
        },
    }, _run())
    block = result.tool_results[0]
    assert block.tool_name == "Edit"
    assert block.is_error
    assert block.error_kind == ErrorKind.TOOL_PERMISSION_DENIED


def test_pending_tool_use_has_no_result():
    provider = OpencodeProvider()
    messages = provider.parse_event({
        "type": "tool_use",
        "part": {"tool": "bash", "callID": "t3", "state": {"status": "running"}},
    }, _run())
    assert len(messages) == 1
    assert messages[0].tool_uses[0].tool_name == "Bash"


@pytest.mark.parametrize("error,kind", [
    ({"name": "ProviderAuthError", "data": {"message": "bad key"}}, ErrorKind.AUTH_EXPIRED),
    ({"name": "APIError", "data": {"message": "slow down", "statusCode": 429}}, ErrorKind.RATE_LIMITED),
    ({"name": "UnknownError", "data": {"message": "boom"}}, ErrorKind.UNKNOWN),
    ({"name": "APIError", "data": "Rate limit exceeded"}, ErrorKind.RATE_LIMITED),
    ({"name": "UnknownError", "data": "boom"}, ErrorKind.UNKNOWN),
])
def test_error_events(error, kind):
    with pytest.raises(ProviderExecutionError) as exc_info:
        OpencodeProvider().parse_event({"type": "error", "error": error}, _run())
    assert exc_info.value.kind == kind


def test_step_limit_raises_timeout():
    provider = OpencodeProvider()
    run = _run(limit=2)
    provider.parse_event({"type": "step_start"}, run)
    provider.parse_event({"type": "step_start"}, run)
    with pytest.raises(ProviderExecutionError) as exc_info:
        provider.parse_event({"type": "step_start"}, run)
    assert exc_info.value.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_check_auth_from_auth_store(monkeypatch, tmp_path):
    for var in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "OPENROUTER_API_KEY",
                "GEMINI_API_KEY", "GROQ_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    provider = OpencodeProvider()
    assert await provider.check_auth() is False

    (tmp_path / "opencode").mkdir()
    (tmp_path / "opencode" / "auth.json").write_text("{}")
    assert await provider.check_auth() is True


@pytest.mark.asyncio
async def test_execute_skips_non_json_lines(tmp_path):
    events = [
        "INFO starting opencode",
        json.dumps({"type": "step_start", "part": {}}),
        json.dumps({"type": "text", "part": {"text": "Done."}}),
        json.dumps({"type": "step_finish", "part": {"reason": "stop"}}),
    ]
    script = tmp_path / "opencode"
    script.write_text("#!/bin/sh\ncat <<'EOF'\n" + "\n".join(events) + "\nEOF\n")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    provider = OpencodeProvider(ProviderSettings(command=str(script)))
    messages = [m async for m in provider.execute(
        ExecuteOptions(prompt="go", cwd=str(tmp_path), max_turns=1),
    )]
    assert [m.text for m in messages] == ["Done."]
