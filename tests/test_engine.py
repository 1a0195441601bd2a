from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeProvider, init_repo, requires_git, wait_until
from taskdeck.engine.config import EngineConfig, ProjectSettings
from taskdeck.engine.engine import Engine
from taskdeck.engine.errors import EngineError, SessionNotFoundError
from taskdeck.engine.models import (
    ErrorKind,
    InstallationState,
    Message,
    QueryKind,
    QueryOptions,
    SessionState,
)
from taskdeck.engine.providers.factory import ProviderFactory
from taskdeck.engine.providers.models import CLAUDE_MODEL_MAP
from taskdeck.engine.transcript_store import TranscriptStore


@pytest.fixture
def engine(provider_factory) -> Engine:
    return Engine(EngineConfig(), provider_factory=provider_factory)


async def _finish(engine: Engine, session) -> SessionState:
    state = await session.wait()
    await wait_until(lambda: engine.scheduler.get(session.session_id) is None)
    return state


@pytest.mark.asyncio
async def test_one_shot_defaults(engine, fake_provider, tmp_path):
    session = await engine.submit_query(
        QueryKind.ONE_SHOT, None, None, "What does main.py do?", cwd=str(tmp_path),
    )
    assert await _finish(engine, session) == SessionState.COMPLETED

    options = fake_provider.calls[0]
    assert options.read_only is True
    assert options.max_turns == 2
    assert options.model == CLAUDE_MODEL_MAP["sonnet"]
    assert options.cwd == str(tmp_path.resolve())
    assert session.provider_id == "claude"
    assert session.project_id == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_streaming_defaults_and_overrides(engine, fake_provider, tmp_path):
    streaming = await engine.submit_query(
        QueryKind.STREAMING, "claude", "opus", "Refactor", cwd=str(tmp_path),
    )
    limited = await engine.submit_query(
        QueryKind.STREAMING, "claude", "haiku", "Look around",
        cwd=str(tmp_path),
        options=QueryOptions(read_only=True, max_turns=5, allowed_tools=["Read"]),
    )
    await _finish(engine, streaming)
    await _finish(engine, limited)

    first, second = fake_provider.calls
    assert first.read_only is False
    assert first.max_turns == 50
    assert first.model == CLAUDE_MODEL_MAP["opus"]
    assert second.read_only is True
    assert second.max_turns == 5
    assert second.allowed_tools == ["Read"]


@pytest.mark.asyncio
async def test_provider_inferred_from_model(engine, tmp_path):
    session = await engine.submit_query(
        QueryKind.STREAMING, None, "cursor-auto", "Fix the test", cwd=str(tmp_path),
    )
    assert await _finish(engine, session) == SessionState.FAILED
    assert session.provider_id == "cursor"
    # Only the fake claude provider is registered.
    assert session.error_kind == ErrorKind.PROVIDER_NOT_INSTALLED


@pytest.mark.asyncio
async def test_cwd_maps_to_registered_project(engine, tmp_path):
    engine.register_project("web", tmp_path, max_concurrency=4)
    session = await engine.submit_query(
        QueryKind.STREAMING, None, None, "Hello", cwd=str(tmp_path),
    )
    assert session.project_id == "web"
    assert engine.get_max_concurrency("web") == 4
    await _finish(engine, session)


@pytest.mark.asyncio
async def test_configured_projects_are_registered(provider_factory, tmp_path):
    config = EngineConfig(projects={"api": ProjectSettings(root=str(tmp_path), max_concurrency=1)})
    engine = Engine(config, provider_factory=provider_factory)
    assert engine.worktrees.has_project("api")
    assert engine.get_max_concurrency("api") == 1


@pytest.mark.asyncio
async def test_running_and_queued_views(engine, fake_provider):
    engine.set_max_concurrency("app", 1)
    fake_provider.gate("one")
    await engine.submit_query(QueryKind.STREAMING, None, None, "one", project_id="app", feature_id="a")
    await engine.submit_query(QueryKind.STREAMING, None, None, "two", project_id="app", feature_id="b")
    assert engine.list_running("app") == ["a"]
    assert engine.list_queued("app") == ["b"]

    assert await engine.cancel_session("b") is True
    assert engine.get_session("b").state == SessionState.CANCELLED
    assert await engine.cancel_session("missing") is False
    await engine.shutdown()


@pytest.mark.asyncio
async def test_session_and_transcript_outlive_the_run(engine):
    session = await engine.submit_query(
        QueryKind.STREAMING, None, None, "Explain", project_id="app", feature_id="explain",
    )
    live = engine.get_session("explain")
    assert live.state in (SessionState.SPAWNING, SessionState.RUNNING)

    await _finish(engine, session)
    info = engine.get_session("explain")
    assert info.state == SessionState.COMPLETED
    assert info.message_count == 2
    assert [m.text for m in engine.get_transcript("explain")] == ["Explain", "done"]

    summary = engine.get_history("explain", detail_level="summary")
    assert summary == [
        {"role": "user", "sequence": 1, "text": "Explain"},
        {"role": "agent", "sequence": 2, "text": "done"},
    ]
    assert engine.get_history("explain")[1]["blocks"] == [{"type": "text", "text": "done"}]
    with pytest.raises(ValueError):
        engine.get_history("explain", detail_level="verbose")


@pytest.mark.asyncio
async def test_unknown_session(engine):
    assert engine.get_session("nope") is None
    with pytest.raises(SessionNotFoundError):
        engine.get_transcript("nope")
    with pytest.raises(SessionNotFoundError):
        engine.get_history("nope")


@pytest.mark.asyncio
async def test_persisted_transcript_is_loaded(provider_factory, tmp_path):
    directory = tmp_path / "transcripts"
    engine = Engine(
        EngineConfig(), provider_factory=provider_factory,
        transcripts=TranscriptStore(directory),
    )
    session = await engine.submit_query(
        QueryKind.STREAMING, None, None, "Persist me", project_id="app", feature_id="keep",
    )
    await _finish(engine, session)
    assert (directory / "keep.jsonl").is_file()

    restarted = Engine(
        EngineConfig(), provider_factory=provider_factory,
        transcripts=TranscriptStore(directory),
    )
    assert [m.text for m in restarted.get_transcript("keep")] == ["Persist me", "done"]


@pytest.mark.asyncio
async def test_provider_status(fake_provider):
    factory = ProviderFactory(probe_ttl_seconds=300.0)
    factory.register("claude", fake_provider)
    factory.register("cursor", FakeProvider(status=InstallationState.NOT_INSTALLED))
    engine = Engine(EngineConfig(), provider_factory=factory)

    report = await engine.provider_status()
    assert report["claude"].status == InstallationState.READY
    assert report["cursor"].status == InstallationState.NOT_INSTALLED
    await engine.provider_status()
    assert fake_provider.probes == 1
    await engine.provider_status(refresh=True)
    assert fake_provider.probes == 2


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(engine):
    await engine.shutdown()
    await engine.shutdown()
    with pytest.raises(EngineError):
        await engine.submit_query(QueryKind.STREAMING, None, None, "late", project_id="app")


@requires_git
@pytest.mark.asyncio
async def test_feature_worktree_lifecycle(engine, fake_provider, tmp_path):
    repo = init_repo(tmp_path / "webapp")
    engine.register_project("webapp", repo)

    def write_file(options):
        Path(options.cwd, "toggle.py").write_text("DARK = True\n")
        return [Message.agent_text("Added the toggle")]

    fake_provider.script = write_file
    session = await engine.submit_query(
        QueryKind.STREAMING, None, None, "Add a dark mode toggle",
        project_id="webapp", feature_id="dark-mode",
    )
    assert await _finish(engine, session) == SessionState.COMPLETED
    assert session.worktree is not None
    assert not (repo / "toggle.py").exists()

    main, feature = await engine.get_worktrees("webapp")
    assert main.is_main
    assert not main.is_dirty
    assert feature.branch == "feature/dark-mode"
    assert feature.feature_id == "dark-mode"
    assert feature.is_dirty

    diff = await engine.get_worktree_diff("webapp", "dark-mode")
    assert diff.path == feature.path
    assert diff.has_changes
    assert [(f.status, f.path) for f in diff.files] == [("??", "toggle.py")]
    assert not (await engine.get_worktree_diff("webapp")).has_changes

    await engine.remove_worktree("webapp", "dark-mode")
    assert not Path(feature.path).exists()
