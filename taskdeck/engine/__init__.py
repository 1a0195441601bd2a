"""Taskdeck engine: runs coding-agent CLIs as isolated, scheduled sessions."""
from .models import (
    BlockType,
    ChangedFile,
    ContentBlock,
    ErrorKind,
    ExecuteOptions,
    InstallationState,
    Message,
    MessageRole,
    ProviderConfig,
    ProviderKind,
    QueryKind,
    QueryOptions,
    QueryResult,
    SessionInfo,
    SessionSpec,
    SessionState,
    Worktree,
    WorktreeDiff,
)
from .config import EngineConfig, ProjectSettings, ProviderSettings
from .errors import (
    EngineError,
    ProviderAuthRequiredError,
    ProviderExecutionError,
    ProviderNotInstalledError,
    QueryError,
    SessionConflictError,
    SessionNotFoundError,
    WorktreeBusyError,
    WorktreeError,
    WorktreeLockTimeoutError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "Engine",
    "Scheduler",
    "Session",
    "WorktreeCoordinator",
    "TranscriptStore",
    # Models
    "BlockType",
    "ChangedFile",
    "ContentBlock",
    "ErrorKind",
    "ExecuteOptions",
    "InstallationState",
    "Message",
    "MessageRole",
    "ProviderConfig",
    "ProviderKind",
    "QueryKind",
    "QueryOptions",
    "QueryResult",
    "SessionInfo",
    "SessionSpec",
    "SessionState",
    "Worktree",
    "WorktreeDiff",
    # Config
    "EngineConfig",
    "ProjectSettings",
    "ProviderSettings",
    "load_yaml_config",
    # Providers (lazy import)
    "Provider",
    "ProviderFactory",
    # Query façade (lazy import)
    "SimpleQueryOptions",
    "StreamingQueryOptions",
    "simple_query",
    "streaming_query",
    "generate_title",
    "enhance_text",
    # Errors
    "EngineError",
    "ProviderAuthRequiredError",
    "ProviderExecutionError",
    "ProviderNotInstalledError",
    "QueryError",
    "SessionConflictError",
    "SessionNotFoundError",
    "WorktreeBusyError",
    "WorktreeError",
    "WorktreeLockTimeoutError",
]

_QUERY_NAMES = {
    "SimpleQueryOptions",
    "StreamingQueryOptions",
    "simple_query",
    "streaming_query",
    "generate_title",
    "enhance_text",
}


def __getattr__(name: str):
    if name == "Engine":
        from .engine import Engine
        return Engine
    if name == "Scheduler":
        from .scheduler import Scheduler
        return Scheduler
    if name == "Session":
        from .session import Session
        return Session
    if name == "WorktreeCoordinator":
        from .worktree import WorktreeCoordinator
        return WorktreeCoordinator
    if name == "TranscriptStore":
        from .transcript_store import TranscriptStore
        return TranscriptStore
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "Provider":
        from .providers.base import Provider
        return Provider
    if name == "ProviderFactory":
        from .providers.factory import ProviderFactory
        return ProviderFactory
    if name in _QUERY_NAMES:
        from . import query
        return getattr(query, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
