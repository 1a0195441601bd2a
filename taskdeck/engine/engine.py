"""Top-level session orchestration engine.

Wires together the provider factory, worktree coordinator, scheduler
and transcript store. Single entry point for submitting agent queries.

Usage:
    from taskdeck.engine import Engine, QueryKind

    engine = Engine()
    engine.register_project("webapp", "/src/webapp")
    session = await engine.submit_query(
        QueryKind.STREAMING, "claude", "sonnet", "Add a dark mode toggle",
        project_id="webapp", feature_id="dark-mode",
    )
    async for message in session.stream():
        print(message.text)
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .config import EngineConfig, EventCallback
from .errors import SessionNotFoundError
from .models import (
    Message,
    ProviderConfig,
    QueryKind,
    QueryOptions,
    SessionInfo,
    SessionSpec,
    Worktree,
    WorktreeDiff,
)
from .providers.factory import ProviderFactory, build_provider_factory
from .scheduler import Scheduler
from .session import Session
from .transcript_store import TranscriptStore, history_entries
from .worktree import WorktreeCoordinator

logger = logging.getLogger(__name__)


class Engine:
    """Session orchestration engine.

    Collaborators default to ones built from *config*; pass your own to
    share them or to substitute fakes in tests.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        provider_factory: ProviderFactory | None = None,
        worktrees: WorktreeCoordinator | None = None,
        transcripts: TranscriptStore | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._config.validate()
        self._event_callback = event_callback or self._config.event_callback

        self._factory = provider_factory or build_provider_factory(
            self._config.providers,
            probe_ttl_seconds=self._config.provider_probe_ttl_seconds,
            probe_timeout_seconds=self._config.provider_probe_timeout_seconds,
            cancel_grace_seconds=self._config.cancel_grace_seconds,
        )
        self._worktrees = worktrees or WorktreeCoordinator(
            worktree_dir=self._config.worktree_dir,
            lock_timeout_seconds=self._config.worktree_lock_timeout_seconds,
        )
        self._transcripts = transcripts or TranscriptStore(self._config.transcript_dir)
        self._scheduler = Scheduler(
            provider_factory=self._factory,
            worktrees=self._worktrees,
            config=self._config,
            transcripts=self._transcripts,
            event_callback=self._event_callback,
        )
        self._shutdown_lock = asyncio.Lock()

        for project_id, project in self._config.projects.items():
            self.register_project(project_id, project.root, project.max_concurrency)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def provider_factory(self) -> ProviderFactory:
        return self._factory

    @property
    def worktrees(self) -> WorktreeCoordinator:
        return self._worktrees

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def transcripts(self) -> TranscriptStore:
        return self._transcripts

    # ── Projects ──────────────────────────────────────────────

    def register_project(
        self,
        project_id: str,
        root: str | Path,
        max_concurrency: int | None = None,
    ) -> Path:
        resolved = self._worktrees.register_project(project_id, root)
        if max_concurrency is not None:
            self._scheduler.set_max_concurrency(project_id, max_concurrency)
        return resolved

    def _project_for_cwd(self, cwd: str | None) -> tuple[str, str | None]:
        """Map an explicit cwd to a registered project, or to its own pool."""
        if cwd is None:
            cwd = str(Path.cwd())
        resolved = Path(cwd).expanduser().resolve()
        for project_id in self._worktrees.project_ids():
            if self._worktrees.project_root(project_id) == resolved:
                return project_id, str(resolved)
        return str(resolved), str(resolved)

    # ── Sessions ──────────────────────────────────────────────

    async def submit_query(
        self,
        kind: QueryKind,
        provider_id: str | None,
        model: str | None,
        prompt: str,
        *,
        project_id: str | None = None,
        cwd: str | None = None,
        feature_id: str | None = None,
        options: QueryOptions | None = None,
    ) -> Session:
        """Submit a query; returns the (admitted or queued) Session.

        One-shot queries are read-only and capped to a couple of turns
        unless *options* says otherwise. Without *provider_id* the
        provider is inferred from *model*.
        """
        options = options or QueryOptions()
        if provider_id is None:
            provider_id = (
                self._factory.provider_for_model(model, self._config.default_provider)
                if model else self._config.default_provider
            )
        if model is None and provider_id == self._config.default_provider:
            model = self._config.default_model

        if project_id is None:
            project_id, cwd = self._project_for_cwd(cwd)
        elif cwd is not None:
            cwd = str(Path(cwd).expanduser().resolve())

        read_only = options.read_only
        if read_only is None:
            read_only = kind == QueryKind.ONE_SHOT
        spec = SessionSpec(
            prompt=prompt,
            provider_id=provider_id,
            model=model,
            kind=kind,
            feature_id=feature_id,
            cwd=cwd,
            use_worktree=options.use_worktree,
            allowed_tools=list(options.allowed_tools),
            read_only=read_only,
            max_turns=options.max_turns,
            timeout_seconds=options.timeout_seconds,
            system_prompt=options.system_prompt,
        )
        session = await self._scheduler.submit(project_id, spec)
        logger.info(
            "Query submitted: session=%s kind=%s provider=%s model=%s project=%s",
            session.session_id[:8], kind.value, provider_id, model, project_id,
        )
        return session

    async def cancel_session(self, session_id: str) -> bool:
        return await self._scheduler.cancel(session_id)

    def list_running(self, project_id: str) -> list[str]:
        return self._scheduler.list_running(project_id)

    def list_queued(self, project_id: str) -> list[str]:
        return self._scheduler.list_queued(project_id)

    def set_max_concurrency(self, project_id: str, n: int) -> None:
        self._scheduler.set_max_concurrency(project_id, n)

    def get_max_concurrency(self, project_id: str) -> int:
        return self._scheduler.get_max_concurrency(project_id)

    def get_session(self, session_id: str) -> SessionInfo | None:
        """Snapshot of a live or retained session."""
        session = self._scheduler.get(session_id)
        if session is not None:
            return session.info()
        return self._transcripts.get_info(session_id)

    def get_transcript(self, session_id: str) -> tuple[Message, ...]:
        """Transcript of a live, retained or persisted session."""
        session = self._scheduler.get(session_id)
        if session is not None:
            return session.messages
        messages = self._transcripts.get(session_id)
        if messages is None:
            messages = self._transcripts.load(session_id)
        if messages is None:
            raise SessionNotFoundError(session_id)
        return messages

    def get_history(
        self, session_id: str, detail_level: str = "full",
    ) -> list[dict[str, Any]]:
        """Transcript as JSON-ready dicts; ``"summary"`` keeps text and tool names."""
        return history_entries(self.get_transcript(session_id), detail_level)

    # ── Worktrees ─────────────────────────────────────────────

    async def get_worktrees(self, project_id: str) -> list[Worktree]:
        return await self._worktrees.list_worktrees(project_id)

    async def get_worktree_diff(
        self, project_id: str, feature_id: str | None = None,
    ) -> WorktreeDiff:
        """Uncommitted changes of a feature's worktree (or the project root)."""
        return await self._worktrees.diff(project_id, feature_id)

    async def remove_worktree(self, project_id: str, feature_id: str) -> None:
        await self._worktrees.remove_feature(project_id, feature_id)

    # ── Providers ─────────────────────────────────────────────

    async def provider_status(self, *, refresh: bool = False) -> dict[str, ProviderConfig]:
        if refresh:
            self._factory.invalidate()
        return await self._factory.availability_report()

    # ── Lifecycle ─────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Cancel every session and wait for their processes to stop."""
        if self._shutdown_lock.locked():
            logger.info("Shutdown already in progress, skipping concurrent call")
            return
        async with self._shutdown_lock:
            await self._scheduler.shutdown()
            logger.info("Engine shutdown complete")
