"""Scheduler: admits, queues, tracks and cancels sessions per project.

Each project has its own pool with a concurrency limit. A session is
admitted (SPAWNING, task started) while the pool has a free slot,
otherwise it waits FIFO in QUEUED. When an admitted session reaches a
terminal state its slot is released and the queue head admitted.

All pool mutation happens on the event loop with no await between
the capacity check and the slot assignment.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import EngineError, SessionConflictError
from .models import SessionSpec, SessionState, _make_id
from .session import Session

if TYPE_CHECKING:
    from .config import EngineConfig, EventCallback
    from .providers.factory import ProviderFactory
    from .transcript_store import TranscriptStore
    from .worktree import WorktreeCoordinator

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass
class ProjectPool:
    """Concurrency pool of one project."""
    project_id: str
    max_concurrency: int
    # Insertion-ordered: session_id -> Session (SPAWNING or RUNNING).
    admitted: dict[str, Session] = field(default_factory=dict)
    queue: deque[Session] = field(default_factory=deque)

    @property
    def has_capacity(self) -> bool:
        return len(self.admitted) < self.max_concurrency


class Scheduler:
    """Owns every live session and the per-project pools."""

    def __init__(
        self,
        *,
        provider_factory: ProviderFactory,
        worktrees: WorktreeCoordinator,
        config: EngineConfig,
        transcripts: TranscriptStore | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._factory = provider_factory
        self._worktrees = worktrees
        self._config = config
        self._transcripts = transcripts
        self._event_callback = event_callback
        self._pools: dict[str, ProjectPool] = {}
        self._sessions: dict[str, Session] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._shutting_down = False

    # ── Pools ─────────────────────────────────────────────────

    def _pool(self, project_id: str) -> ProjectPool:
        pool = self._pools.get(project_id)
        if pool is None:
            project = self._config.projects.get(project_id)
            limit = (
                project.max_concurrency
                if project is not None and project.max_concurrency is not None
                else self._config.max_concurrency
            )
            pool = ProjectPool(project_id=project_id, max_concurrency=limit)
            self._pools[project_id] = pool
        return pool

    def get_max_concurrency(self, project_id: str) -> int:
        return self._pool(project_id).max_concurrency

    def set_max_concurrency(self, project_id: str, n: int) -> None:
        """Replace the project's limit. Never preempts; raising it admits queued sessions."""
        if n < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {n}")
        pool = self._pool(project_id)
        old, pool.max_concurrency = pool.max_concurrency, n
        logger.info("Project %s: max_concurrency %d -> %d", project_id, old, n)
        self._drain(pool)

    # ── Submission ────────────────────────────────────────────

    async def submit(self, project_id: str, spec: SessionSpec) -> Session:
        """Create a session and admit or queue it.

        Raises SessionConflictError when *spec.feature_id* names a
        session that is still active.
        """
        if self._shutting_down:
            raise EngineError("Scheduler is shutting down")
        session_id = spec.feature_id or _make_id()
        if not _SESSION_ID_RE.match(session_id):
            raise ValueError(f"Invalid session id {session_id!r}")
        existing = self._sessions.get(session_id)
        # A terminal session still counts until its task has cleaned up.
        if existing is not None and (
            not existing.is_terminal or session_id in self._tasks
        ):
            raise SessionConflictError(session_id, existing.state.value)

        session = Session(
            spec,
            session_id=session_id,
            project_id=project_id,
            provider_factory=self._factory,
            worktrees=self._worktrees,
            config=self._config,
            event_callback=self._event_callback,
        )
        self._sessions[session_id] = session

        pool = self._pool(project_id)
        if pool.has_capacity and not pool.queue:
            self._admit(pool, session)
        else:
            session.mark_queued()
            pool.queue.append(session)
            logger.info(
                "Session %s queued for project %s (position %d, %d/%d admitted)",
                session_id[:8], project_id, len(pool.queue),
                len(pool.admitted), pool.max_concurrency,
            )
            await session.flush_events()
        return session

    def _admit(self, pool: ProjectPool, session: Session) -> None:
        session.mark_spawning()
        pool.admitted[session.session_id] = session
        task = asyncio.create_task(
            self._run_session(pool, session),
            name=f"session-{session.session_id[:8]}",
        )
        self._tasks[session.session_id] = task
        session.attach_task(task)
        logger.info(
            "Session admitted: %s (project=%s, provider=%s, %d/%d admitted)",
            session.session_id[:8], pool.project_id, session.provider_id,
            len(pool.admitted), pool.max_concurrency,
        )

    def _drain(self, pool: ProjectPool) -> None:
        while pool.queue and pool.has_capacity and not self._shutting_down:
            self._admit(pool, pool.queue.popleft())

    async def _run_session(self, pool: ProjectPool, session: Session) -> None:
        task = asyncio.current_task()
        try:
            await session.run()
        finally:
            sid = session.session_id
            if pool.admitted.get(sid) is session:
                del pool.admitted[sid]
            if self._tasks.get(sid) is task:
                del self._tasks[sid]
            self._retire(session)
            self._drain(pool)

    def _retire(self, session: Session) -> None:
        """Move a terminal session out of the live registry."""
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        if self._transcripts is not None:
            self._transcripts.retain(session.info(), session.messages)

    # ── Cancellation ──────────────────────────────────────────

    async def cancel(self, session_id: str) -> bool:
        """Cancel a live session. False when unknown or already terminal."""
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            return False

        if session.state == SessionState.QUEUED:
            pool = self._pool(session.project_id)
            pool.queue.remove(session)
            session.cancel_queued()
            self._retire(session)
            logger.info("Session %s removed from queue", session_id[:8])
            await session.flush_events()
            return True

        session.request_cancel()
        return True

    # ── Queries ───────────────────────────────────────────────

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_running(self, project_id: str) -> list[str]:
        """Admitted (spawning or running) session ids, in admission order."""
        pool = self._pools.get(project_id)
        return list(pool.admitted) if pool else []

    def list_queued(self, project_id: str) -> list[str]:
        pool = self._pools.get(project_id)
        return [s.session_id for s in pool.queue] if pool else []

    def running_count(self, project_id: str) -> int:
        pool = self._pools.get(project_id)
        return len(pool.admitted) if pool else 0

    def active_count(self) -> int:
        """Live sessions across all projects."""
        return len(self._sessions)

    # ── Shutdown ──────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Cancel everything and wait for admitted sessions to finish."""
        self._shutting_down = True
        for pool in self._pools.values():
            while pool.queue:
                session = pool.queue.popleft()
                session.cancel_queued()
                self._retire(session)
                await session.flush_events()
            for session in list(pool.admitted.values()):
                session.request_cancel()
        tasks = list(self._tasks.values())
        if tasks:
            logger.info("Waiting for %d session(s) to stop", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
