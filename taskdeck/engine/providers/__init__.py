"""Provider abstraction over the supported agent CLIs."""
from .base import Provider, TurnCounter
from .factory import PROVIDER_CLASSES, ProviderFactory, build_provider_factory
from .claude_provider import ClaudeProvider
from .cursor_provider import CursorProvider
from .opencode_provider import OpencodeProvider
from .models import provider_for_model, resolve_model

__all__ = [
    "Provider",
    "TurnCounter",
    "PROVIDER_CLASSES",
    "ProviderFactory",
    "build_provider_factory",
    "ClaudeProvider",
    "CursorProvider",
    "OpencodeProvider",
    "provider_for_model",
    "resolve_model",
]
