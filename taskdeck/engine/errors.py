"""Exception hierarchy for the session orchestration engine.

Every engine exception carries an ``ErrorKind`` so callers can branch on
the failure category without string matching.
"""
from __future__ import annotations

from .models import ErrorKind


class EngineError(Exception):
    """Base exception for all engine errors."""
    kind: ErrorKind = ErrorKind.UNKNOWN


class ProviderNotInstalledError(EngineError):
    """Provider CLI is unknown, missing, or older than the minimum version."""
    kind = ErrorKind.PROVIDER_NOT_INSTALLED

    def __init__(
        self,
        provider_id: str,
        reason: str,
        available: list[str] | None = None,
    ):
        self.provider_id = provider_id
        self.reason = reason
        self.available = available or []
        msg = f"Provider '{provider_id}' is not installed: {reason}"
        if self.available:
            msg += f". Available: {', '.join(self.available)}"
        super().__init__(msg)


class ProviderAuthRequiredError(EngineError):
    """Provider CLI is present but has no usable credentials."""
    kind = ErrorKind.PROVIDER_AUTH_REQUIRED

    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(
            f"Provider '{provider_id}' requires authentication: {reason}"
        )


class ProviderExecutionError(EngineError):
    """The agent process failed while running."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
    ):
        self.kind = kind
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class WorktreeError(EngineError):
    """A git worktree operation failed."""

    def __init__(self, message: str, *, stderr: str = ""):
        self.stderr = stderr
        super().__init__(message)


class WorktreeLockTimeoutError(WorktreeError):
    """The per-project git lock could not be taken in time."""
    kind = ErrorKind.WORKTREE_LOCK_TIMEOUT

    def __init__(self, project_id: str, timeout_seconds: float):
        self.project_id = project_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out after {timeout_seconds}s waiting for the git lock "
            f"of project {project_id}"
        )


class WorktreeBusyError(WorktreeError):
    """The feature's worktree is reserved by another session."""
    kind = ErrorKind.WORKTREE_BUSY

    def __init__(self, feature_id: str, holder: str | None = None):
        self.feature_id = feature_id
        self.holder = holder
        msg = f"Worktree for feature {feature_id} is in use"
        if holder:
            msg += f" by session {holder[:8]}"
        super().__init__(msg)


class SessionConflictError(EngineError):
    """A session with this id is still active."""

    def __init__(self, session_id: str, state: str):
        self.session_id = session_id
        self.state = state
        super().__init__(
            f"Session {session_id} is already active (state={state})"
        )


class SessionNotFoundError(EngineError):
    """No live or retained session has this id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class QueryError(EngineError):
    """A blocking query did not complete successfully."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        session_id: str | None = None,
    ):
        self.kind = kind
        self.session_id = session_id
        super().__init__(message)
