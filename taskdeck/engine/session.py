"""A single agent session: one prompt, one provider process, one transcript.

The Scheduler creates a Session, decides between QUEUED and SPAWNING,
and runs ``Session.run()`` in its own task once admitted. ``run()``
resolves the provider, acquires the worktree, consumes the adapter
stream and always ends in a terminal state, releasing the worktree on
the way out.

State changes happen synchronously (the Scheduler's admission decisions
must not await); the matching events are queued and delivered in order
by whoever holds control next (see ``flush_events``).

TIMEOUT MODEL (two independent clocks):

1. Wall clock (``session_timeout_seconds``), enforced by the adapter
   around the whole invocation.
2. Inactivity (``inactivity_timeout_seconds``), enforced here: restarts
   on every message, expiry stops the process and fails with TIMEOUT.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from .config import EngineConfig, EventCallback, fire_event
from .errors import EngineError, ProviderExecutionError
from .failure_classifier import is_permission_denial
from .lifecycle import can_transition, validate_transition
from .models import (
    BlockType,
    ContentBlock,
    ErrorKind,
    ExecuteOptions,
    Message,
    MessageRole,
    QueryKind,
    SessionInfo,
    SessionSpec,
    SessionState,
    Worktree,
    _utcnow,
)
from .providers.base import MUTATING_TOOLS

if TYPE_CHECKING:
    from .providers.base import Provider
    from .providers.factory import ProviderFactory
    from .worktree import WorktreeCoordinator

logger = logging.getLogger(__name__)

# One answer plus one tool round-trip.
ONE_SHOT_MAX_TURNS = 2


class Session:
    """Owns the lifecycle and transcript of one agent invocation."""

    def __init__(
        self,
        spec: SessionSpec,
        *,
        session_id: str,
        project_id: str,
        provider_factory: ProviderFactory,
        worktrees: WorktreeCoordinator,
        config: EngineConfig,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._spec = spec
        self._session_id = session_id
        self._project_id = project_id
        self._factory = provider_factory
        self._worktrees = worktrees
        self._config = config
        self._event_callback = event_callback

        self._state = SessionState.PENDING
        self._messages: list[Message] = []
        self._pending_events: list[dict[str, Any]] = []
        self._flush_lock = asyncio.Lock()
        self._flush_owner: asyncio.Task | None = None
        self._terminal_event_queued = False
        self._waiter = asyncio.Event()
        self._done = asyncio.Event()

        self._model: str | None = spec.model
        self._cwd: str | None = spec.cwd
        self._worktree: Worktree | None = None
        self._denied_tool_ids: set[str] = set()
        self._task: asyncio.Task | None = None
        self._started = False

        self.cancel_requested = False
        self.error_kind: ErrorKind | None = None
        self.error: str | None = None
        self.created_at = _utcnow()
        self.started_at = None
        self.ended_at = None

    # ── Read-only views ───────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def provider_id(self) -> str:
        return self._spec.provider_id

    @property
    def spec(self) -> SessionSpec:
        return self._spec

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def worktree(self) -> Worktree | None:
        return self._worktree

    @property
    def cwd(self) -> str | None:
        return self._cwd

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def read_only(self) -> bool:
        return self._spec.read_only or self._spec.kind == QueryKind.ONE_SHOT

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self._session_id,
            project_id=self._project_id,
            provider_id=self._spec.provider_id,
            model=self._model,
            state=self._state,
            kind=self._spec.kind,
            cwd=self._cwd,
            worktree=self._worktree,
            message_count=len(self._messages),
            created_at=self.created_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            error_kind=self.error_kind,
            error=self.error,
        )

    def final_text(self) -> str:
        """Text of the last agent message that carried any."""
        for message in reversed(self._messages):
            if message.role == MessageRole.AGENT and message.text:
                return message.text
        return ""

    # ── Consumers ─────────────────────────────────────────────

    async def stream(self, from_sequence: int = 1) -> AsyncIterator[Message]:
        """Replay the transcript from *from_sequence*, then follow it live.

        Ends once the session is terminal and every message was yielded.
        Any number of consumers may stream concurrently.
        """
        index = max(from_sequence, 1) - 1
        while True:
            while index < len(self._messages):
                yield self._messages[index]
                index += 1
            if self.is_terminal:
                return
            await self._waiter.wait()

    async def wait(self) -> SessionState:
        """Block until the session is terminal."""
        await self._done.wait()
        return self._state

    # ── Scheduler hooks (synchronous) ─────────────────────────

    def mark_queued(self) -> None:
        self._transition(SessionState.QUEUED)

    def mark_spawning(self) -> None:
        self._transition(SessionState.SPAWNING)

    def attach_task(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel_queued(self) -> None:
        """Cancel a session that never left the queue."""
        self.cancel_requested = True
        self._transition(SessionState.CANCELLED)
        self.ended_at = _utcnow()
        self._queue_terminal_event()
        self._done.set()

    def request_cancel(self) -> None:
        """Ask an admitted session to stop. Returns immediately."""
        if self.is_terminal:
            return
        self.cancel_requested = True
        logger.info("Session %s: cancel requested (%s)", self._session_id[:8], self._state.value)
        # An unstarted task checks the flag itself; cancelling it before its
        # first step would skip the scheduler's cleanup.
        if self._started and self._task is not None and not self._task.done():
            self._task.cancel()

    async def flush_events(self) -> None:
        """Deliver queued events to the callback in order.

        Several coroutines may flush the same session (its own run, the
        scheduler's drain and cancel paths); deliveries never interleave.
        """
        task = asyncio.current_task()
        if task is not None and task is self._flush_owner:
            # Re-entered from the callback; the outer loop delivers the rest.
            return
        async with self._flush_lock:
            self._flush_owner = task
            try:
                while self._pending_events:
                    event = self._pending_events.pop(0)
                    await fire_event(self._event_callback, event)
            finally:
                self._flush_owner = None

    # ── Run ───────────────────────────────────────────────────

    async def run(self) -> SessionState:
        """Drive the session from SPAWNING to a terminal state."""
        self._started = True
        self.started_at = _utcnow()
        try:
            await self.flush_events()
            if self.cancel_requested:
                self._finish_cancelled()
                return self._state

            try:
                provider = await self._spawn()
            except EngineError as exc:
                logger.warning(
                    "Session %s failed to spawn: %s", self._session_id[:8], exc,
                )
                self._finish_failed(exc.kind, str(exc))
                return self._state

            self._transition(SessionState.RUNNING)
            self._append(Message.user(self._spec.prompt))
            await self.flush_events()
            await self._consume(provider)
            self._transition(SessionState.COMPLETED)
        except asyncio.CancelledError:
            requested = self.cancel_requested
            self._finish_cancelled()
            if not requested:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        except EngineError as exc:
            logger.warning(
                "Session %s failed (%s): %s",
                self._session_id[:8], exc.kind.value, exc,
            )
            self._finish_failed(exc.kind, str(exc))
        except Exception as exc:
            logger.exception("Session %s crashed", self._session_id[:8])
            self._finish_failed(ErrorKind.UNKNOWN, f"{type(exc).__name__}: {exc}")
        finally:
            self._release_worktree()
            self.ended_at = self.ended_at or _utcnow()
            self._queue_terminal_event()
            self._done.set()
            await self.flush_events()
        return self._state

    async def _spawn(self) -> Provider:
        # Provider first: a missing CLI must never create a worktree.
        provider = await self._factory.resolve(self._spec.provider_id)
        self._model = self._factory.resolve_model(self._spec.provider_id, self._spec.model)

        if (
            self._spec.use_worktree
            and self._spec.feature_id
            and self._worktrees.has_project(self._project_id)
        ):
            self._worktree = await self._worktrees.acquire(
                self._project_id, self._spec.feature_id, holder=self._session_id,
            )
            self._cwd = self._worktree.path
        elif self._cwd is None and self._worktrees.has_project(self._project_id):
            self._cwd = str(self._worktrees.project_root(self._project_id))
        return provider

    def _execute_options(self) -> ExecuteOptions:
        spec = self._spec
        if spec.max_turns is not None:
            max_turns = spec.max_turns
        elif spec.kind == QueryKind.ONE_SHOT:
            max_turns = ONE_SHOT_MAX_TURNS
        else:
            max_turns = self._config.max_turns
        timeout = spec.timeout_seconds
        if timeout is None:
            timeout = self._config.session_timeout_seconds
        return ExecuteOptions(
            prompt=spec.prompt,
            cwd=self._cwd or ".",
            model=self._model,
            allowed_tools=list(spec.allowed_tools),
            read_only=self.read_only,
            max_turns=max_turns,
            timeout_seconds=timeout if timeout > 0 else None,
            system_prompt=spec.system_prompt,
        )

    async def _consume(self, provider: Provider) -> None:
        inactivity = self._config.inactivity_timeout_seconds
        stream = provider.execute(self._execute_options())
        try:
            while True:
                try:
                    async with asyncio.timeout(inactivity if inactivity > 0 else None):
                        message = await anext(stream)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    raise ProviderExecutionError(
                        ErrorKind.TIMEOUT,
                        f"no output from {provider.name} for {inactivity:g}s",
                    ) from None
                self._append(self._apply_tool_policy(message))
                await self.flush_events()
        finally:
            await stream.aclose()

    def _apply_tool_policy(self, message: Message) -> Message:
        """Mark denied tool results; remember mutating calls in read-only mode."""
        if message.role == MessageRole.AGENT and self.read_only:
            for block in message.tool_uses:
                if block.tool_name in MUTATING_TOOLS and block.tool_id:
                    self._denied_tool_ids.add(block.tool_id)
            return message

        if message.role != MessageRole.TOOL:
            return message

        changed = False
        blocks: list[ContentBlock] = []
        for block in message.blocks:
            if (
                block.type == BlockType.TOOL_RESULT
                and block.error_kind is None
                and self._is_denied(block)
            ):
                block = ContentBlock.tool_result(
                    block.tool_id,
                    block.text or "permission denied",
                    tool_name=block.tool_name,
                    is_error=True,
                    error_kind=ErrorKind.TOOL_PERMISSION_DENIED,
                )
                changed = True
            if block.error_kind == ErrorKind.TOOL_PERMISSION_DENIED:
                logger.warning(
                    "Session %s: tool %s denied",
                    self._session_id[:8], block.tool_name or block.tool_id,
                )
            blocks.append(block)
        if not changed:
            return message
        return Message(role=message.role, blocks=tuple(blocks), timestamp=message.timestamp)

    def _is_denied(self, block: ContentBlock) -> bool:
        if block.tool_id and block.tool_id in self._denied_tool_ids:
            return True
        if self.read_only and block.tool_name in MUTATING_TOOLS:
            return True
        return block.is_error and is_permission_denial(block.text)

    # ── Internals ─────────────────────────────────────────────

    def _transition(self, new_state: SessionState) -> None:
        """Transition to a new state with validation."""
        validate_transition(self._state, new_state)
        old = self._state
        self._state = new_state
        logger.info(
            "Session %s: %s -> %s",
            self._session_id[:8], old.value, new_state.value,
        )
        self._pending_events.append({
            "event": "session_state_changed",
            "session_id": self._session_id,
            "project_id": self._project_id,
            "old_state": old.value,
            "new_state": new_state.value,
        })
        self._notify()

    def _append(self, message: Message) -> Message:
        stamped = message.with_sequence(len(self._messages) + 1)
        self._messages.append(stamped)
        self._pending_events.append({
            "event": "session_message",
            "session_id": self._session_id,
            "sequence": stamped.sequence,
            "message": stamped.to_dict(),
        })
        self._notify()
        return stamped

    def _notify(self) -> None:
        waiter, self._waiter = self._waiter, asyncio.Event()
        waiter.set()

    def _finish_cancelled(self) -> None:
        if not can_transition(self._state, SessionState.CANCELLED):
            return
        if self._state == SessionState.RUNNING:
            self._append(Message.system("Session cancelled by user"))
        self._transition(SessionState.CANCELLED)

    def _finish_failed(self, kind: ErrorKind, error: str) -> None:
        if not can_transition(self._state, SessionState.FAILED):
            return
        self.error_kind = kind
        self.error = error
        if self._state == SessionState.RUNNING:
            self._append(Message.system(f"Session failed ({kind.value}): {error}"))
        self._transition(SessionState.FAILED)

    def _release_worktree(self) -> None:
        if self._worktree is not None:
            self._worktrees.release(self._worktree)

    def _queue_terminal_event(self) -> None:
        if self._terminal_event_queued:
            return
        self._terminal_event_queued = True
        self._pending_events.append({
            "event": "session_terminal",
            "session_id": self._session_id,
            "project_id": self._project_id,
            "state": self._state.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
        })
