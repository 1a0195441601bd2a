"""Tests for model alias resolution and provider-family inference."""
from __future__ import annotations

from taskdeck.engine.providers.models import (
    CLAUDE_MODEL_MAP,
    provider_for_model,
    resolve_model,
    strip_provider_prefix,
)


def test_provider_for_model_families():
    assert provider_for_model("sonnet") == "claude"
    assert provider_for_model("claude-opus-4-5-20251101") == "claude"
    assert provider_for_model("cursor-gpt-5") == "cursor"
    assert provider_for_model("opencode-grok") == "opencode"
    assert provider_for_model("anthropic/claude-sonnet-4-5") == "opencode"
    assert provider_for_model(None, default="cursor") == "cursor"


def test_strip_provider_prefix():
    assert strip_provider_prefix("cursor-gpt-5") == "gpt-5"
    assert strip_provider_prefix("opencode-grok") == "grok"
    assert strip_provider_prefix("sonnet") == "sonnet"


def test_claude_aliases_expand():
    assert resolve_model("claude", "haiku") == CLAUDE_MODEL_MAP["haiku"]
    assert resolve_model("claude", "Sonnet") == CLAUDE_MODEL_MAP["sonnet"]
    assert resolve_model("claude", "claude-opus") == CLAUDE_MODEL_MAP["opus"]
    assert resolve_model("claude", "claude-sonnet-4-5-20250929") == "claude-sonnet-4-5-20250929"


def test_configured_aliases_take_precedence():
    aliases = {"fast": "claude-haiku-4-5-20251001", "sonnet": "claude-sonnet-4-0"}
    assert resolve_model("claude", "fast", aliases) == "claude-haiku-4-5-20251001"
    assert resolve_model("claude", "sonnet", aliases) == "claude-sonnet-4-0"
    assert resolve_model("cursor", "cursor-fast", {"fast": "gpt-5-mini"}) == "gpt-5-mini"


def test_default_models():
    assert resolve_model("cursor", None) == "auto"
    assert resolve_model("opencode", None) is None
    assert resolve_model("claude", "") is None


def test_prefixes_are_stripped_for_cli():
    assert resolve_model("cursor", "cursor-gpt-5") == "gpt-5"
    assert resolve_model("opencode", "anthropic/claude-sonnet-4-5") == "anthropic/claude-sonnet-4-5"
