"""Model string resolution.

Maps a user-facing model string to its provider family and to the id
the provider CLI expects. Resolution order for ``resolve_model``:

1. Provider ``models`` map from YAML (explicit user config)
2. Built-in Claude family aliases (``haiku``, ``sonnet``, ``opus``)
3. The model string itself, minus any family prefix
"""
from __future__ import annotations

from ..models import ProviderKind

CLAUDE_MODEL_MAP: dict[str, str] = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
}

CURSOR_PREFIX = "cursor-"
OPENCODE_PREFIX = "opencode-"

# cursor-agent picks a model itself when given "auto".
CURSOR_DEFAULT_MODEL = "auto"


def provider_for_model(model: str | None, default: str = ProviderKind.CLAUDE.value) -> str:
    """Return the provider family id that serves *model*."""
    if not model:
        return default
    normalized = model.strip().lower()
    if normalized.startswith(CURSOR_PREFIX):
        return ProviderKind.CURSOR.value
    if normalized.startswith(OPENCODE_PREFIX) or "/" in normalized:
        return ProviderKind.OPENCODE.value
    return ProviderKind.CLAUDE.value


def strip_provider_prefix(model: str) -> str:
    for prefix in (CURSOR_PREFIX, OPENCODE_PREFIX):
        if model.lower().startswith(prefix):
            return model[len(prefix):]
    return model


def resolve_model(
    provider_id: str,
    model: str | None,
    aliases: dict[str, str] | None = None,
) -> str | None:
    """Resolve *model* to the concrete id passed to *provider_id*'s CLI.

    Returns None when no model was requested and the provider should
    use its own default.
    """
    aliases = aliases or {}
    if not model:
        if provider_id == ProviderKind.CURSOR.value:
            return CURSOR_DEFAULT_MODEL
        return None

    model = model.strip()
    if model in aliases:
        return aliases[model]

    bare = strip_provider_prefix(model)
    if bare in aliases:
        return aliases[bare]

    if provider_id == ProviderKind.CLAUDE.value:
        key = bare.lower()
        if key.startswith("claude-") and key[len("claude-"):] in CLAUDE_MODEL_MAP:
            key = key[len("claude-"):]
        return CLAUDE_MODEL_MAP.get(key, bare)
    return bare
