"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TASKDECK_* env vars,
or through a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Errors are logged, never raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.warning(
            "Event callback failed for %s", event.get("event"), exc_info=True,
        )


@dataclass
class ProviderSettings:
    """Per-provider overrides from the ``providers`` YAML section."""
    command: str | None = None
    api_key_env: str | None = None
    # Alias -> concrete model id, e.g. {"fast": "claude-haiku-4-5"}.
    models: dict[str, str] = field(default_factory=dict)
    # None = provider default tool set.
    allowed_tools: list[str] | None = None
    min_version: str | None = None
    enabled: bool = True


@dataclass
class ProjectSettings:
    """A project known up front from the ``projects`` YAML section."""
    root: str
    max_concurrency: int | None = None


@dataclass
class EngineConfig:
    """Session orchestration engine configuration."""

    default_provider: str = "claude"
    default_model: str = "sonnet"

    # Admitted (spawning + running) sessions per project.
    max_concurrency: int = 3
    # Agent turns for streaming sessions. One-shot queries use their own cap.
    max_turns: int = 50
    # Wall-clock budget of one agent invocation.
    # Set to 0 (or a negative value) to disable timeout.
    session_timeout_seconds: float = 3600.0
    # Max silence between two messages of a running session.
    # Set to 0 (or a negative value) to disable timeout.
    inactivity_timeout_seconds: float = 600.0
    # SIGTERM -> SIGKILL grace when stopping an agent process.
    cancel_grace_seconds: float = 5.0

    # Git worktrees
    worktree_dir: str = ".taskdeck/worktrees"
    worktree_lock_timeout_seconds: float = 30.0

    # Provider probing
    provider_probe_ttl_seconds: float = 30.0
    provider_probe_timeout_seconds: float = 10.0

    # Optional JSONL persistence of finished transcripts.
    transcript_dir: str | None = None

    # Logging
    log_level: str = "INFO"

    providers: dict[str, ProviderSettings] = field(default_factory=dict)
    projects: dict[str, ProjectSettings] = field(default_factory=dict)

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "session_message", "session_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    def validate(self) -> None:
        """Raise ValueError on settings the engine cannot run with."""
        if self.max_concurrency < 1:
            raise ValueError(
                f"max_concurrency must be >= 1, got {self.max_concurrency}"
            )
        if self.max_turns < 1:
            raise ValueError(f"max_turns must be >= 1, got {self.max_turns}")
        if self.cancel_grace_seconds < 0:
            raise ValueError(
                "cancel_grace_seconds must be >= 0, "
                f"got {self.cancel_grace_seconds}"
            )
        if self.worktree_lock_timeout_seconds <= 0:
            raise ValueError(
                "worktree_lock_timeout_seconds must be > 0, "
                f"got {self.worktree_lock_timeout_seconds}"
            )
        for project_id, project in self.projects.items():
            if project.max_concurrency is not None and project.max_concurrency < 1:
                raise ValueError(
                    f"projects.{project_id}.max_concurrency must be >= 1, "
                    f"got {project.max_concurrency}"
                )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TASKDECK_* environment variables."""
        taskdeck_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TASKDECK_")
        }
        if taskdeck_vars:
            logger.info(
                "EngineConfig.from_env: TASKDECK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(taskdeck_vars.items())),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no TASKDECK_* env vars set, using defaults"
            )

        config = cls(
            default_provider=os.getenv(
                "TASKDECK_DEFAULT_PROVIDER", cls.default_provider
            ),
            default_model=os.getenv("TASKDECK_DEFAULT_MODEL", cls.default_model),
            max_concurrency=int(os.getenv(
                "TASKDECK_MAX_CONCURRENCY", str(cls.max_concurrency)
            )),
            max_turns=int(os.getenv("TASKDECK_MAX_TURNS", str(cls.max_turns))),
            session_timeout_seconds=float(os.getenv(
                "TASKDECK_SESSION_TIMEOUT", str(cls.session_timeout_seconds)
            )),
            inactivity_timeout_seconds=float(os.getenv(
                "TASKDECK_INACTIVITY_TIMEOUT",
                str(cls.inactivity_timeout_seconds),
            )),
            cancel_grace_seconds=float(os.getenv(
                "TASKDECK_CANCEL_GRACE", str(cls.cancel_grace_seconds)
            )),
            worktree_dir=os.getenv("TASKDECK_WORKTREE_DIR", cls.worktree_dir),
            worktree_lock_timeout_seconds=float(os.getenv(
                "TASKDECK_WORKTREE_LOCK_TIMEOUT",
                str(cls.worktree_lock_timeout_seconds),
            )),
            provider_probe_ttl_seconds=float(os.getenv(
                "TASKDECK_PROBE_TTL", str(cls.provider_probe_ttl_seconds)
            )),
            provider_probe_timeout_seconds=float(os.getenv(
                "TASKDECK_PROBE_TIMEOUT",
                str(cls.provider_probe_timeout_seconds),
            )),
            transcript_dir=os.getenv("TASKDECK_TRANSCRIPT_DIR") or None,
            log_level=os.getenv("TASKDECK_LOG_LEVEL", cls.log_level),
        )
        config.validate()
        logger.info(
            "EngineConfig.from_env: provider=%s model=%s max_concurrency=%d "
            "log_level=%s",
            config.default_provider, config.default_model,
            config.max_concurrency, config.log_level,
        )
        return config
