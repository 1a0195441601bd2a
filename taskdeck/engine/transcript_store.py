"""Retention of finished session transcripts.

Terminal sessions leave the scheduler; their transcript and final
snapshot live on here for later retrieval. With a directory configured,
each transcript is also written as JSON Lines (``<session_id>.jsonl``,
one Message per line) so it survives a restart.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .models import BlockType, Message, SessionInfo

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a temp file beside *path*, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def history_entries(
    messages: tuple[Message, ...] | list[Message],
    detail_level: str = "full",
) -> list[dict[str, Any]]:
    """Transcript as plain dicts.

    ``"full"`` returns every block; ``"summary"`` keeps text and
    tool names only.
    """
    if detail_level not in ("full", "summary"):
        raise ValueError(f"Unknown detail level {detail_level!r}: use 'full' or 'summary'")
    if detail_level == "full":
        return [m.to_dict() for m in messages]

    result: list[dict[str, Any]] = []
    for message in messages:
        entry: dict[str, Any] = {
            "role": message.role.value,
            "sequence": message.sequence,
        }
        if message.text:
            entry["text"] = message.text
        tools = [
            b.tool_name for b in message.blocks
            if b.type in (BlockType.TOOL_USE, BlockType.TOOL_RESULT) and b.tool_name
        ]
        if tools:
            entry["tools"] = tools
        if any(b.is_error for b in message.blocks):
            entry["is_error"] = True
        result.append(entry)
    return result


class TranscriptStore:
    """Finished transcripts keyed by session id.

    Safe for single-event-loop usage. Retaining a session id again
    replaces the previous record.
    """

    def __init__(self, directory: str | Path | None = None) -> None:
        self._directory = Path(directory).expanduser() if directory else None
        self._transcripts: dict[str, tuple[Message, ...]] = {}
        self._infos: dict[str, SessionInfo] = {}

    @property
    def directory(self) -> Path | None:
        return self._directory

    def retain(self, info: SessionInfo, messages: tuple[Message, ...]) -> None:
        """Store a terminal session's snapshot and transcript."""
        self._transcripts[info.session_id] = tuple(messages)
        self._infos[info.session_id] = info
        if self._directory is not None:
            self._persist(info.session_id, messages)

    def get(self, session_id: str) -> tuple[Message, ...] | None:
        return self._transcripts.get(session_id)

    def get_info(self, session_id: str) -> SessionInfo | None:
        return self._infos.get(session_id)

    def has(self, session_id: str) -> bool:
        return session_id in self._transcripts

    def list_ids(self) -> list[str]:
        return list(self._transcripts.keys())

    def resolve_session_id(self, session_id: str) -> str | None:
        """Resolve a (possibly truncated) session id to the full id.

        Returns the exact match if found, or a unique prefix match,
        or None if no match / ambiguous.
        """
        if session_id in self._transcripts:
            return session_id
        matches = [k for k in self._transcripts if k.startswith(session_id)]
        if len(matches) == 1:
            return matches[0]
        return None

    def load(self, session_id: str) -> tuple[Message, ...] | None:
        """Read a persisted transcript back (None if there is none)."""
        if self._directory is None:
            return None
        path = self._path(session_id)
        if not path.is_file():
            return None
        messages: list[Message] = []
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(Message.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as exc:
                    logger.warning(
                        "Skipping malformed transcript line %s:%d: %s",
                        path.name, lineno, exc,
                    )
        self._transcripts.setdefault(session_id, tuple(messages))
        return tuple(messages)

    def _path(self, session_id: str) -> Path:
        assert self._directory is not None
        return self._directory / f"{session_id}.jsonl"

    def _persist(self, session_id: str, messages: tuple[Message, ...]) -> None:
        path = self._path(session_id)
        content = "".join(
            json.dumps(m.to_dict(), ensure_ascii=False) + "\n" for m in messages
        )
        try:
            atomic_write_text(path, content)
        except OSError:
            logger.warning("Could not persist transcript %s", path, exc_info=True)
            return
        logger.debug("Transcript persisted: %s (%d messages)", path, len(messages))
