"""Core data models for the session orchestration engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    PENDING = "pending"
    QUEUED = "queued"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SessionState.COMPLETED,
    SessionState.FAILED,
    SessionState.CANCELLED,
})


class ProviderKind(str, Enum):
    """The closed set of agent CLI families the engine can drive."""
    CLAUDE = "claude"
    CURSOR = "cursor"
    OPENCODE = "opencode"


class InstallationState(str, Enum):
    """Outcome of probing a provider CLI on this machine."""
    READY = "ready"
    NOT_INSTALLED = "not_installed"
    NEEDS_AUTH = "needs_auth"
    VERSION_MISMATCH = "version_mismatch"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    TOOL = "tool"
    SYSTEM = "system"


class BlockType(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"


class QueryKind(str, Enum):
    """One-shot queries are read-only and short; streaming ones do work."""
    ONE_SHOT = "one_shot"
    STREAMING = "streaming"


class ErrorKind(str, Enum):
    """Closed taxonomy of failure kinds surfaced to callers."""
    PROVIDER_NOT_INSTALLED = "provider_not_installed"
    PROVIDER_AUTH_REQUIRED = "provider_auth_required"
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    PROCESS_CRASHED = "process_crashed"
    TOOL_PERMISSION_DENIED = "tool_permission_denied"
    WORKTREE_LOCK_TIMEOUT = "worktree_lock_timeout"
    WORKTREE_BUSY = "worktree_busy"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ContentBlock:
    """One piece of a canonical message.

    Text blocks carry ``text``. Tool-use blocks carry ``tool_name``,
    ``tool_id`` and ``tool_input``. Tool-result blocks carry the
    ``tool_id`` they answer, the result in ``text``, and ``is_error``
    / ``error_kind`` when the tool failed or was denied.
    """
    type: BlockType
    text: str = ""
    tool_name: str | None = None
    tool_id: str | None = None
    tool_input: Mapping[str, Any] | None = None
    is_error: bool = False
    error_kind: ErrorKind | None = None

    def __post_init__(self) -> None:
        # Read-only view over a private copy; the block stays immutable.
        if self.tool_input is not None:
            object.__setattr__(
                self, "tool_input", MappingProxyType(copy.deepcopy(dict(self.tool_input))),
            )

    @classmethod
    def text_block(cls, text: str) -> ContentBlock:
        return cls(type=BlockType.TEXT, text=text)

    @classmethod
    def tool_use(
        cls,
        tool_name: str,
        tool_id: str | None,
        tool_input: dict[str, Any] | None = None,
    ) -> ContentBlock:
        return cls(
            type=BlockType.TOOL_USE,
            tool_name=tool_name,
            tool_id=tool_id,
            tool_input=tool_input or {},
        )

    @classmethod
    def tool_result(
        cls,
        tool_id: str | None,
        text: str,
        *,
        tool_name: str | None = None,
        is_error: bool = False,
        error_kind: ErrorKind | None = None,
    ) -> ContentBlock:
        return cls(
            type=BlockType.TOOL_RESULT,
            text=text,
            tool_name=tool_name,
            tool_id=tool_id,
            is_error=is_error,
            error_kind=error_kind,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.text:
            data["text"] = self.text
        if self.tool_name is not None:
            data["tool_name"] = self.tool_name
        if self.tool_id is not None:
            data["tool_id"] = self.tool_id
        if self.tool_input is not None:
            data["tool_input"] = copy.deepcopy(dict(self.tool_input))
        if self.is_error:
            data["is_error"] = True
        if self.error_kind is not None:
            data["error_kind"] = self.error_kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentBlock:
        error_kind = data.get("error_kind")
        return cls(
            type=BlockType(data["type"]),
            text=data.get("text", ""),
            tool_name=data.get("tool_name"),
            tool_id=data.get("tool_id"),
            tool_input=data.get("tool_input"),
            is_error=bool(data.get("is_error", False)),
            error_kind=ErrorKind(error_kind) if error_kind else None,
        )


@dataclass(frozen=True)
class Message:
    """A canonical transcript entry.

    Adapters yield messages with ``sequence == 0``; the owning Session
    stamps the 1-based, gap-free sequence number when it appends them.
    """
    role: MessageRole
    blocks: tuple[ContentBlock, ...] = ()
    sequence: int = 0
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=MessageRole.USER, blocks=(ContentBlock.text_block(text),))

    @classmethod
    def agent_text(cls, text: str) -> Message:
        return cls(role=MessageRole.AGENT, blocks=(ContentBlock.text_block(text),))

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=MessageRole.SYSTEM, blocks=(ContentBlock.text_block(text),))

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(
            b.text for b in self.blocks if b.type == BlockType.TEXT
        )

    @property
    def tool_uses(self) -> list[ContentBlock]:
        return [b for b in self.blocks if b.type == BlockType.TOOL_USE]

    @property
    def tool_results(self) -> list[ContentBlock]:
        return [b for b in self.blocks if b.type == BlockType.TOOL_RESULT]

    def with_sequence(self, sequence: int) -> Message:
        return replace(self, sequence=sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "blocks": [b.to_dict() for b in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=MessageRole(data["role"]),
            blocks=tuple(ContentBlock.from_dict(b) for b in data.get("blocks", [])),
            sequence=int(data.get("sequence", 0)),
            timestamp=datetime.fromisoformat(data["timestamp"])
            if data.get("timestamp") else _utcnow(),
        )


@dataclass(frozen=True)
class Worktree:
    """An isolated git working copy, or the project's main checkout."""
    path: str
    branch: str
    is_main: bool = False
    changed_files: int = 0
    project_id: str = ""
    feature_id: str | None = None

    @property
    def is_dirty(self) -> bool:
        return self.changed_files > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "branch": self.branch,
            "is_main": self.is_main,
            "changed_files": self.changed_files,
            "project_id": self.project_id,
            "feature_id": self.feature_id,
        }


@dataclass(frozen=True)
class ChangedFile:
    """One ``git status --porcelain`` entry."""
    status: str
    path: str

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "path": self.path}


@dataclass(frozen=True)
class WorktreeDiff:
    """Uncommitted changes of a worktree, relative to its HEAD."""
    path: str
    diff: str = ""
    files: tuple[ChangedFile, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "diff": self.diff,
            "files": [f.to_dict() for f in self.files],
            "has_changes": self.has_changes,
        }


@dataclass(frozen=True)
class ProviderConfig:
    """Resolved description of one provider CLI installation."""
    provider_id: str
    command: str | None
    models: tuple[str, ...] = ()
    status: InstallationState = InstallationState.NOT_INSTALLED
    version: str | None = None
    detail: str = ""

    @property
    def is_ready(self) -> bool:
        return self.status == InstallationState.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "command": self.command,
            "models": list(self.models),
            "status": self.status.value,
            "version": self.version,
            "detail": self.detail,
        }


@dataclass
class ExecuteOptions:
    """Everything an adapter needs to run one agent invocation."""
    prompt: str
    cwd: str
    model: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    read_only: bool = False
    # Agent turns before the adapter gives up with TIMEOUT. None = no limit.
    max_turns: int | None = None
    # Wall-clock budget for the whole invocation. None or <= 0 = no limit.
    timeout_seconds: float | None = None
    system_prompt: str | None = None


@dataclass
class SessionSpec:
    """What the caller asked for when submitting a session."""
    prompt: str
    provider_id: str
    model: str | None = None
    kind: QueryKind = QueryKind.STREAMING
    feature_id: str | None = None
    # Explicit working directory. Ignored when a worktree is acquired.
    cwd: str | None = None
    use_worktree: bool = True
    allowed_tools: list[str] = field(default_factory=list)
    read_only: bool = False
    max_turns: int | None = None
    timeout_seconds: float | None = None
    system_prompt: str | None = None


@dataclass
class QueryOptions:
    """Optional knobs of ``Engine.submit_query``. None = kind default."""
    allowed_tools: list[str] = field(default_factory=list)
    read_only: bool | None = None
    max_turns: int | None = None
    timeout_seconds: float | None = None
    system_prompt: str | None = None
    use_worktree: bool = True


@dataclass(frozen=True)
class SessionInfo:
    """Read-only snapshot of a session handed to consumers."""
    session_id: str
    project_id: str
    provider_id: str
    model: str | None
    state: SessionState
    kind: QueryKind
    cwd: str | None
    worktree: Worktree | None
    message_count: int
    created_at: datetime
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_id": self.project_id,
            "provider_id": self.provider_id,
            "model": self.model,
            "state": self.state.value,
            "kind": self.kind.value,
            "cwd": self.cwd,
            "worktree": self.worktree.to_dict() if self.worktree else None,
            "message_count": self.message_count,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class QueryResult:
    """Outcome of a blocking one-shot query."""
    session_id: str
    text: str
    state: SessionState
    messages: tuple[Message, ...] = ()
    model: str | None = None
