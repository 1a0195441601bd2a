"""Provider factory: maps provider ids to Provider instances.

Resolution probes the CLI (binary, version, auth) and caches the
outcome per provider for a short TTL, so a burst of submissions costs
one probe while an install or login is picked up soon after.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from ..config import ProviderSettings
from ..errors import ProviderAuthRequiredError, ProviderNotInstalledError
from ..models import InstallationState, ProviderConfig, ProviderKind
from .base import Provider
from .claude_provider import ClaudeProvider
from .cursor_provider import CursorProvider
from .models import provider_for_model, resolve_model
from .opencode_provider import OpencodeProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[ProviderKind, type[Provider]] = {
    ProviderKind.CLAUDE: ClaudeProvider,
    ProviderKind.CURSOR: CursorProvider,
    ProviderKind.OPENCODE: OpencodeProvider,
}


class ProviderFactory:
    """Registry of agent providers with cached installation probes."""

    def __init__(
        self,
        *,
        probe_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._providers: dict[str, Provider] = {}
        self._probes: dict[str, tuple[float, ProviderConfig]] = {}
        self._probe_locks: dict[str, asyncio.Lock] = {}
        self._ttl = probe_ttl_seconds
        self._clock = clock

    def register(self, provider_id: str, provider: Provider) -> None:
        """Register a provider by id, replacing any previous one."""
        self._providers[provider_id] = provider
        self._probes.pop(provider_id, None)
        logger.info(
            "Provider registered: %s (command=%s)", provider_id, provider.command,
        )

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def list_names(self) -> list[str]:
        return list(self._providers.keys())

    async def describe(self, provider_id: str, *, force: bool = False) -> ProviderConfig:
        """Return the (cached) ProviderConfig of a registered provider."""
        provider = self._providers.get(provider_id)
        if provider is None:
            return ProviderConfig(
                provider_id=provider_id,
                command=None,
                status=InstallationState.NOT_INSTALLED,
                detail="unknown provider",
            )

        lock = self._probe_locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            cached = self._probes.get(provider_id)
            now = self._clock()
            if not force and cached is not None and now - cached[0] < self._ttl:
                return cached[1]
            config = await provider.detect_installation()
            self._probes[provider_id] = (self._clock(), config)
            logger.info(
                "Provider %s probed: %s%s",
                provider_id, config.status.value,
                f" ({config.detail})" if config.detail else "",
            )
            return config

    async def resolve(self, provider_id: str) -> Provider:
        """Return a ready provider or raise the matching error."""
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotInstalledError(
                provider_id, "unknown provider", available=self.list_names(),
            )
        config = await self.describe(provider_id)
        if config.status in (
            InstallationState.NOT_INSTALLED, InstallationState.VERSION_MISMATCH,
        ):
            raise ProviderNotInstalledError(provider_id, config.detail)
        if config.status == InstallationState.NEEDS_AUTH:
            raise ProviderAuthRequiredError(provider_id, config.detail)
        return provider

    def invalidate(self, provider_id: str | None = None) -> None:
        """Drop cached probes (all of them when no id is given)."""
        if provider_id is None:
            self._probes.clear()
        else:
            self._probes.pop(provider_id, None)

    async def availability_report(self) -> dict[str, ProviderConfig]:
        """Probe every registered provider concurrently."""
        names = self.list_names()
        configs = await asyncio.gather(*(self.describe(n) for n in names))
        report = dict(zip(names, configs))
        ready = [n for n, c in report.items() if c.is_ready]
        if ready:
            logger.info("Available providers: %s", ", ".join(ready))
        else:
            logger.warning("No providers are ready. Sessions cannot be spawned.")
        return report

    def provider_for_model(self, model: str | None, default: str = ProviderKind.CLAUDE.value) -> str:
        return provider_for_model(model, default)

    def resolve_model(self, provider_id: str, model: str | None) -> str | None:
        provider = self._providers.get(provider_id)
        aliases = provider.settings.models if provider is not None else {}
        return resolve_model(provider_id, model, aliases)


def build_provider_factory(
    provider_settings: dict[str, ProviderSettings] | None = None,
    *,
    probe_ttl_seconds: float = 30.0,
    probe_timeout_seconds: float = 10.0,
    cancel_grace_seconds: float = 5.0,
) -> ProviderFactory:
    """Build a ProviderFactory with every enabled built-in provider."""
    provider_settings = provider_settings or {}
    factory = ProviderFactory(probe_ttl_seconds=probe_ttl_seconds)
    for kind, cls in PROVIDER_CLASSES.items():
        settings = provider_settings.get(kind.value) or ProviderSettings()
        if not settings.enabled:
            logger.info("Provider %s disabled by configuration", kind.value)
            continue
        factory.register(kind.value, cls(
            settings,
            probe_timeout_seconds=probe_timeout_seconds,
            cancel_grace_seconds=cancel_grace_seconds,
        ))
    return factory
