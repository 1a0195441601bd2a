"""Abstract base for agent CLI providers.

Each provider wraps a different agent runtime (Claude Agent SDK,
cursor-agent, opencode). The engine calls ``execute()`` for every
session and ``detect_installation()`` when resolving a provider.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import re
import shutil
from typing import AsyncIterator, ClassVar

from ..config import ProviderSettings
from ..errors import ProviderExecutionError
from ..models import (
    ErrorKind,
    ExecuteOptions,
    InstallationState,
    Message,
    ProviderConfig,
    ProviderKind,
)

logger = logging.getLogger(__name__)

# Canonical tool names shared by every adapter.
READ_ONLY_TOOLS: tuple[str, ...] = ("Read", "Grep", "Glob", "LS", "WebFetch", "WebSearch")
MUTATING_TOOLS: frozenset[str] = frozenset({
    "Write", "Edit", "MultiEdit", "NotebookEdit", "Delete", "Bash",
})

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)+)")


def parse_version(text: str) -> tuple[int, ...] | None:
    """Pull the first dotted version number out of *text*."""
    match = _VERSION_RE.search(text or "")
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def version_at_least(found: str | None, minimum: str | None) -> bool:
    if not minimum:
        return True
    have, want = parse_version(found or ""), parse_version(minimum)
    if have is None or want is None:
        # Unparseable output: trust the binary rather than lock the user out.
        return True
    width = max(len(have), len(want))
    return have + (0,) * (width - len(have)) >= want + (0,) * (width - len(want))


class TurnCounter:
    """Enforces ``max_turns`` for CLIs that do not enforce it themselves.

    A turn opens with the first agent output after the prompt or after
    tool results came back.
    """

    def __init__(self, provider_id: str, limit: int | None) -> None:
        self.provider_id = provider_id
        self.limit = limit
        self.turns = 0
        self._awaiting_agent = True

    def start_turn(self) -> None:
        self.turns += 1
        self._awaiting_agent = False
        if self.limit is not None and self.turns > self.limit:
            raise ProviderExecutionError(
                ErrorKind.TIMEOUT,
                f"{self.provider_id} exceeded its {self.limit}-turn limit",
            )

    def agent_output(self) -> None:
        if self._awaiting_agent:
            self.start_turn()

    def tool_finished(self) -> None:
        self._awaiting_agent = True


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations wrap a specific agent runtime:
    - ClaudeProvider: Claude Agent SDK (query())
    - CursorProvider: cursor-agent stream-json
    - OpencodeProvider: opencode run --format json
    """

    kind: ClassVar[ProviderKind]
    default_command: ClassVar[str]

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        *,
        probe_timeout_seconds: float = 10.0,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        self._settings = settings or ProviderSettings()
        self._command = self.resolve_command(
            self._settings.command or "", self.default_command,
        )
        self._probe_timeout = probe_timeout_seconds
        self._cancel_grace = cancel_grace_seconds

    @property
    def name(self) -> str:
        """Short provider name (e.g. 'claude', 'cursor')."""
        return self.kind.value

    @property
    def command(self) -> str:
        return self._command

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @abc.abstractmethod
    async def execute(self, options: ExecuteOptions) -> AsyncIterator[Message]:
        """Run one agent invocation.

        Yields canonical Messages (sequence 0) in emission order.
        Terminates normally, or raises ProviderExecutionError /
        ProviderNotInstalledError. Closing the iterator early stops
        the underlying process.
        """
        yield  # pragma: no cover

    @abc.abstractmethod
    async def check_auth(self) -> bool:
        """Cheap local check for usable credentials."""

    def builtin_models(self) -> tuple[str, ...]:
        return ()

    def supported_models(self) -> tuple[str, ...]:
        configured = tuple(self._settings.models.values())
        return tuple(dict.fromkeys(self.builtin_models() + configured))

    def allowed_tools(self, requested: list[str], read_only: bool) -> list[str]:
        """Merge requested tools with the configured allowlist."""
        tools = list(requested) or list(self._settings.allowed_tools or [])
        if read_only:
            tools = [t for t in tools if t not in MUTATING_TOOLS] or list(READ_ONLY_TOOLS)
        return tools

    def is_available(self) -> bool:
        """Check if this provider's CLI is on PATH (or an existing path)."""
        return shutil.which(self._command) is not None

    async def probe_version(self) -> str | None:
        """Run ``<cli> --version`` with a bounded timeout."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError):
            return None
        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self._probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s --version did not answer within %.1fs",
                self._command, self._probe_timeout,
            )
            proc.kill()
            await proc.wait()
            return None
        text = stdout.decode("utf-8", errors="replace").strip()
        return text.splitlines()[0] if text else None

    async def detect_installation(self) -> ProviderConfig:
        """Probe binary presence, version and auth. Idempotent."""
        path = shutil.which(self._command)
        if path is None:
            return ProviderConfig(
                provider_id=self.name,
                command=None,
                models=self.supported_models(),
                status=InstallationState.NOT_INSTALLED,
                detail=f"'{self._command}' not found on PATH",
            )

        version = await self.probe_version()
        if not version_at_least(version, self._settings.min_version):
            return ProviderConfig(
                provider_id=self.name,
                command=path,
                models=self.supported_models(),
                status=InstallationState.VERSION_MISMATCH,
                version=version,
                detail=(
                    f"version {version or 'unknown'} is older than the "
                    f"required {self._settings.min_version}"
                ),
            )

        if not await self.check_auth():
            return ProviderConfig(
                provider_id=self.name,
                command=path,
                models=self.supported_models(),
                status=InstallationState.NEEDS_AUTH,
                version=version,
                detail=f"no credentials found for {self.name}",
            )

        return ProviderConfig(
            provider_id=self.name,
            command=path,
            models=self.supported_models(),
            status=InstallationState.READY,
            version=version,
        )

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.kind.value,
                )
                return fallback
            return command
        return fallback or command

    def _build_env(self, extra: dict[str, str] | None = None) -> dict[str, str] | None:
        """Build subprocess environment with optional API key and extras.

        Returns None (inherit the parent environment) when there is
        nothing to add.
        """
        additions: dict[str, str] = dict(extra or {})
        if self._settings.api_key_env:
            key = os.environ.get(self._settings.api_key_env)
            if key:
                additions[self.api_key_var()] = key
        if not additions:
            return None
        env = os.environ.copy()
        env.update(additions)
        return env

    def api_key_var(self) -> str:
        """Environment variable the CLI itself reads its key from."""
        return f"{self.kind.value.upper()}_API_KEY"
