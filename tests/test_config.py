"""Tests for environment and YAML configuration."""
from __future__ import annotations

import pytest
import yaml

from taskdeck.engine.config import EngineConfig, fire_event
from taskdeck.engine.yaml_config import load_yaml_config


def test_defaults():
    config = EngineConfig()
    assert config.max_concurrency == 3
    assert config.default_provider == "claude"
    assert config.default_model == "sonnet"
    assert config.cancel_grace_seconds == 5.0
    assert config.worktree_dir == ".taskdeck/worktrees"
    config.validate()


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("TASKDECK_MAX_CONCURRENCY", "5")
    monkeypatch.setenv("TASKDECK_INACTIVITY_TIMEOUT", "0")
    monkeypatch.setenv("TASKDECK_DEFAULT_PROVIDER", "cursor")
    monkeypatch.setenv("TASKDECK_TRANSCRIPT_DIR", "")
    config = EngineConfig.from_env()
    assert config.max_concurrency == 5
    assert config.inactivity_timeout_seconds == 0.0
    assert config.default_provider == "cursor"
    assert config.transcript_dir is None


def test_from_env_rejects_zero_concurrency(monkeypatch):
    monkeypatch.setenv("TASKDECK_MAX_CONCURRENCY", "0")
    with pytest.raises(ValueError, match="max_concurrency"):
        EngineConfig.from_env()


def test_load_yaml_config(tmp_path):
    (tmp_path / "webapp").mkdir()
    path = tmp_path / "taskdeck.yaml"
    path.write_text(yaml.safe_dump({
        "engine": {
            "max_concurrency": 2,
            "session_timeout_seconds": 120,
            "default_model": "opus",
            "bogus": True,
        },
        "providers": {
            "claude": {
                "models": {"fast": "claude-haiku-4-5-20251001"},
                "allowed_tools": ["Read", "Grep"],
            },
            "cursor": {"command": "/opt/cursor-agent", "min_version": 2025.9},
            "opencode": {"enabled": False, "models": ["anthropic/claude-sonnet-4-5"]},
        },
        "projects": {
            "webapp": {"root": "webapp", "max_concurrency": 1},
        },
    }))

    config = load_yaml_config(path, base=EngineConfig())

    assert config.max_concurrency == 2
    assert config.session_timeout_seconds == 120.0
    assert config.default_model == "opus"
    assert not hasattr(config, "bogus")

    claude = config.providers["claude"]
    assert claude.models == {"fast": "claude-haiku-4-5-20251001"}
    assert claude.allowed_tools == ["Read", "Grep"]
    cursor = config.providers["cursor"]
    assert cursor.command == "/opt/cursor-agent"
    assert cursor.min_version == "2025.9"
    opencode = config.providers["opencode"]
    assert opencode.enabled is False
    assert opencode.models == {
        "anthropic/claude-sonnet-4-5": "anthropic/claude-sonnet-4-5",
    }

    project = config.projects["webapp"]
    assert project.root == str((tmp_path / "webapp").resolve())
    assert project.max_concurrency == 1


def test_load_yaml_config_unknown_provider(tmp_path):
    path = tmp_path / "taskdeck.yaml"
    path.write_text("providers:\n  gemini:\n    command: gemini\n")
    with pytest.raises(ValueError, match="unknown provider"):
        load_yaml_config(path, base=EngineConfig())


def test_load_yaml_config_invalid_project_concurrency(tmp_path):
    path = tmp_path / "taskdeck.yaml"
    path.write_text("projects:\n  app:\n    root: /tmp\n    max_concurrency: 0\n")
    with pytest.raises(ValueError, match="max_concurrency"):
        load_yaml_config(path, base=EngineConfig())


def test_load_yaml_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=EngineConfig())


def test_load_yaml_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "taskdeck.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="mapping"):
        load_yaml_config(path, base=EngineConfig())


@pytest.mark.asyncio
async def test_fire_event_logs_callback_failure(caplog):
    async def broken(event):
        raise RuntimeError("boom")

    await fire_event(broken, {"event": "session_message"})
    assert "Event callback failed for session_message" in caplog.text

    seen = []

    async def record(event):
        seen.append(event)

    await fire_event(record, {"event": "x"})
    await fire_event(None, {"event": "y"})
    assert seen == [{"event": "x"}]
