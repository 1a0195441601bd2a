from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from taskdeck.engine.cli import _resolve_prompt, main
from taskdeck.engine.engine import Engine
from taskdeck.engine.models import InstallationState, ProviderConfig


def test_prompt_from_file(tmp_path):
    prompt_file = tmp_path / "task.md"
    prompt_file.write_text("  Add a dark mode toggle\n")
    assert _resolve_prompt(None, str(prompt_file)) == "Add a dark mode toggle"
    assert _resolve_prompt("inline", None) == "inline"


@pytest.mark.parametrize("inline, file_path", [
    ("inline", "task.md"),
    (None, None),
    (None, "does-not-exist.md"),
])
def test_prompt_errors_exit(inline, file_path):
    with pytest.raises(SystemExit) as excinfo:
        _resolve_prompt(inline, file_path)
    assert excinfo.value.code == 1


def test_probe_prints_report(capsys):
    engine = MagicMock()
    engine.provider_status = AsyncMock(return_value={
        "claude": ProviderConfig(
            "claude", "/usr/local/bin/claude",
            status=InstallationState.READY, version="2.0.14",
        ),
        "cursor": ProviderConfig(
            "cursor", None, detail="'cursor-agent' not found on PATH",
        ),
    })
    with patch("taskdeck.engine.cli.Engine", return_value=engine):
        with pytest.raises(SystemExit) as excinfo:
            main(["probe"])

    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "2.0.14" in out
    assert "not_installed" in out


def test_run_streams_messages(capsys, tmp_path, fake_provider, provider_factory):
    with patch(
        "taskdeck.engine.cli.Engine",
        side_effect=lambda config: Engine(config, provider_factory=provider_factory),
    ):
        with pytest.raises(SystemExit) as excinfo:
            main(["--cwd", str(tmp_path), "run", "Explain the layout", "--read-only"])

    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "done" in out
    assert ": completed ===" in out
    assert fake_provider.calls[0].read_only is True
    assert fake_provider.calls[0].cwd == str(tmp_path.resolve())


def test_missing_config_file_exits(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path / "missing.yaml"), "probe"])
    assert excinfo.value.code == 1
    assert "Config file not found" in capsys.readouterr().out
