from __future__ import annotations

import pytest

from fakes import FakeProvider
from taskdeck.engine.providers.factory import ProviderFactory


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider_factory(fake_provider) -> ProviderFactory:
    factory = ProviderFactory(probe_ttl_seconds=30.0)
    factory.register("claude", fake_provider)
    return factory
