from __future__ import annotations

import pytest

from fakes import FakeProvider, tool_call, tool_result, wait_until
from taskdeck.engine.config import EngineConfig
from taskdeck.engine.engine import Engine
from taskdeck.engine.errors import ProviderExecutionError, QueryError
from taskdeck.engine.models import ErrorKind, Message, MessageRole, SessionState
from taskdeck.engine.prompts import TITLE_SYSTEM_PROMPT, enhancement_system_prompt
from taskdeck.engine.providers.factory import ProviderFactory
from taskdeck.engine.providers.models import CLAUDE_MODEL_MAP
from taskdeck.engine.query import (
    SimpleQueryOptions,
    StreamingQueryOptions,
    enhance_text,
    generate_title,
    simple_query,
    streaming_query,
)


def _engine(provider: FakeProvider) -> Engine:
    factory = ProviderFactory()
    factory.register("claude", provider)
    return Engine(EngineConfig(), provider_factory=factory)


@pytest.mark.asyncio
async def test_simple_query_returns_final_text(tmp_path):
    provider = FakeProvider([
        Message.agent_text("Let me look."),
        Message.agent_text("  It parses the config file.  "),
    ])
    engine = _engine(provider)
    result = await simple_query(engine, SimpleQueryOptions(
        prompt="What does load() do?", cwd=str(tmp_path), system_prompt="Be brief.",
    ))

    assert result.text == "It parses the config file."
    assert result.state == SessionState.COMPLETED
    assert result.model == CLAUDE_MODEL_MAP["sonnet"]
    assert [m.role for m in result.messages][0] == MessageRole.USER
    options = provider.calls[0]
    assert options.read_only is True
    assert options.system_prompt == "Be brief."


@pytest.mark.asyncio
async def test_simple_query_denies_writes_but_completes(tmp_path):
    provider = FakeProvider([
        tool_call("Write", "w1", file_path="out.txt", content="x"),
        tool_result("w1", "File written", name="Write"),
        Message.agent_text("I can only read files; the answer is 3."),
    ])
    result = await simple_query(_engine(provider), SimpleQueryOptions(
        prompt="Count the modules", cwd=str(tmp_path),
    ))

    assert result.text == "I can only read files; the answer is 3."
    denied = result.messages[2].tool_results[0]
    assert denied.error_kind == ErrorKind.TOOL_PERMISSION_DENIED
    assert not (tmp_path / "out.txt").exists()


@pytest.mark.asyncio
async def test_simple_query_failure_kind(tmp_path):
    provider = FakeProvider(
        error=ProviderExecutionError(ErrorKind.AUTH_EXPIRED, "Please run /login"),
    )
    with pytest.raises(QueryError) as excinfo:
        await simple_query(_engine(provider), SimpleQueryOptions(prompt="hi", cwd=str(tmp_path)))
    assert excinfo.value.kind == ErrorKind.AUTH_EXPIRED
    assert excinfo.value.session_id is not None


@pytest.mark.asyncio
async def test_simple_query_without_text_fails(tmp_path):
    provider = FakeProvider([tool_call("Read", "r1", file_path="a.py")])
    with pytest.raises(QueryError) as excinfo:
        await simple_query(_engine(provider), SimpleQueryOptions(prompt="hi", cwd=str(tmp_path)))
    assert excinfo.value.kind == ErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_generate_title_cleans_the_answer():
    provider = FakeProvider([Message.agent_text('"Add dark mode toggle."\nIt adds a toggle.')])
    title = await generate_title(_engine(provider), "Users want a dark theme switch in settings")

    assert title == "Add dark mode toggle"
    options = provider.calls[0]
    assert options.system_prompt == TITLE_SYSTEM_PROMPT
    assert options.model == CLAUDE_MODEL_MAP["haiku"]
    assert "dark theme switch" in options.prompt


@pytest.mark.asyncio
async def test_generate_title_rejects_empty_description():
    with pytest.raises(ValueError):
        await generate_title(_engine(FakeProvider()), "   ")


@pytest.mark.asyncio
async def test_enhance_text_unknown_mode_falls_back():
    provider = FakeProvider([Message.agent_text("Show validation errors inline on the login form.")])
    text = await enhance_text(_engine(provider), "fix login", mode="shouting")

    assert text == "Show validation errors inline on the login form."
    options = provider.calls[0]
    assert options.system_prompt == enhancement_system_prompt("improve")
    assert options.prompt.endswith("Input:\nfix login\n\nOutput:")
    assert options.model == CLAUDE_MODEL_MAP["sonnet"]


@pytest.mark.asyncio
async def test_streaming_query_yields_transcript(tmp_path):
    provider = FakeProvider([Message.agent_text("Working"), Message.agent_text("Done")])
    engine = _engine(provider)
    messages = [
        m async for m in streaming_query(engine, StreamingQueryOptions(
            prompt="Build it", cwd=str(tmp_path), feature_id="build",
        ))
    ]
    assert [m.text for m in messages] == ["Build it", "Working", "Done"]
    assert [m.sequence for m in messages] == [1, 2, 3]
    assert provider.calls[0].read_only is False


@pytest.mark.asyncio
async def test_leaving_stream_early_cancels(tmp_path):
    provider = FakeProvider()
    provider.gate("Long task")
    engine = _engine(provider)
    stream = streaming_query(engine, StreamingQueryOptions(
        prompt="Long task", cwd=str(tmp_path), feature_id="long",
    ))
    first = await anext(stream)
    assert first.text == "Long task"
    await stream.aclose()

    await wait_until(lambda: engine.get_session("long").state == SessionState.CANCELLED)
