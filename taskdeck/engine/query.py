"""Query façade: blocking one-shot queries and streamed sessions.

Thin helpers over ``Engine.submit_query`` for callers that want a
final answer (``simple_query``) or a message stream
(``streaming_query``), plus the two built-in one-shot tasks: feature
title generation and description enhancement.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import QueryError
from .models import (
    ErrorKind,
    Message,
    QueryKind,
    QueryOptions,
    QueryResult,
    SessionState,
)
from .prompts import (
    TITLE_SYSTEM_PROMPT,
    build_enhancement_prompt,
    build_title_prompt,
    enhancement_system_prompt,
    normalize_enhancement_mode,
)

if TYPE_CHECKING:
    from .engine import Engine

logger = logging.getLogger(__name__)

TITLE_MODEL = "haiku"
ENHANCEMENT_MODEL = "sonnet"
_MAX_TITLE_LENGTH = 120


@dataclass
class SimpleQueryOptions:
    prompt: str
    provider_id: str | None = None
    model: str | None = None
    project_id: str | None = None
    cwd: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    max_turns: int | None = None
    timeout_seconds: float | None = None


@dataclass
class StreamingQueryOptions:
    prompt: str
    provider_id: str | None = None
    model: str | None = None
    project_id: str | None = None
    cwd: str | None = None
    feature_id: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    read_only: bool = False
    max_turns: int | None = None
    timeout_seconds: float | None = None
    use_worktree: bool = True


async def simple_query(engine: Engine, opts: SimpleQueryOptions) -> QueryResult:
    """Run a read-only one-shot query and return its final text.

    Raises QueryError carrying the failure kind when the session does
    not complete or completes without any text.
    """
    session = await engine.submit_query(
        QueryKind.ONE_SHOT,
        opts.provider_id,
        opts.model,
        opts.prompt,
        project_id=opts.project_id,
        cwd=opts.cwd,
        options=QueryOptions(
            allowed_tools=list(opts.allowed_tools),
            read_only=True,
            max_turns=opts.max_turns,
            timeout_seconds=opts.timeout_seconds,
            system_prompt=opts.system_prompt,
            use_worktree=False,
        ),
    )
    state = await session.wait()

    if state == SessionState.CANCELLED:
        raise QueryError(ErrorKind.CANCELLED, "query was cancelled", session.session_id)
    if state == SessionState.FAILED:
        kind = session.error_kind or ErrorKind.UNKNOWN
        raise QueryError(kind, session.error or "query failed", session.session_id)

    text = session.final_text().strip()
    if not text:
        raise QueryError(
            ErrorKind.UNKNOWN, "provider returned no text", session.session_id,
        )
    return QueryResult(
        session_id=session.session_id,
        text=text,
        state=state,
        messages=session.messages,
        model=session.model,
    )


async def streaming_query(
    engine: Engine, opts: StreamingQueryOptions,
) -> AsyncIterator[Message]:
    """Submit a streaming session and yield its messages as they arrive.

    Closing the iterator early cancels the session.
    """
    session = await engine.submit_query(
        QueryKind.STREAMING,
        opts.provider_id,
        opts.model,
        opts.prompt,
        project_id=opts.project_id,
        cwd=opts.cwd,
        feature_id=opts.feature_id,
        options=QueryOptions(
            allowed_tools=list(opts.allowed_tools),
            read_only=opts.read_only,
            max_turns=opts.max_turns,
            timeout_seconds=opts.timeout_seconds,
            system_prompt=opts.system_prompt,
            use_worktree=opts.use_worktree,
        ),
    )
    finished = False
    try:
        async for message in session.stream():
            yield message
        finished = True
    finally:
        if not finished and not session.is_terminal:
            logger.info(
                "Stream consumer left session %s early, cancelling",
                session.session_id[:8],
            )
            await engine.cancel_session(session.session_id)


async def generate_title(
    engine: Engine,
    description: str,
    *,
    provider_id: str | None = None,
    model: str | None = None,
) -> str:
    """Short board title for a feature description."""
    if not description.strip():
        raise ValueError("description must not be empty")
    result = await simple_query(engine, SimpleQueryOptions(
        prompt=build_title_prompt(description),
        provider_id=provider_id,
        model=model or (TITLE_MODEL if provider_id in (None, "claude") else None),
        system_prompt=TITLE_SYSTEM_PROMPT,
    ))
    title = result.text.strip().splitlines()[0].strip().strip("\"'").rstrip(".")
    return title[:_MAX_TITLE_LENGTH]


async def enhance_text(
    engine: Engine,
    text: str,
    mode: str = "improve",
    *,
    provider_id: str | None = None,
    model: str | None = None,
) -> str:
    """Rewrite a task description in one of the enhancement modes."""
    if not text.strip():
        raise ValueError("text must not be empty")
    mode = normalize_enhancement_mode(mode)
    result = await simple_query(engine, SimpleQueryOptions(
        prompt=build_enhancement_prompt(mode, text),
        provider_id=provider_id,
        model=model or (ENHANCEMENT_MODEL if provider_id in (None, "claude") else None),
        system_prompt=enhancement_system_prompt(mode),
    ))
    return result.text
